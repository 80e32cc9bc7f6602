import logging
import re
import threading

from .db import INTEGRITY_ERRORS, new_id, row_to_dict, utc_now_text

logger = logging.getLogger(__name__)

DEFAULT_GROUP_NAME = "My Group"
DEFAULT_DISPLAY_NAME = "User"
MAX_PROVISION_ATTEMPTS = 3

WELCOME_DEDUPE_KEY = "welcome-v1"
WELCOME_NOTIFICATION = {
    "type": "welcome",
    "title": "Welcome to Cashflow Tracker!",
    "body": (
        "We're glad you're here. Cashflow Tracker helps you organise your personal and "
        "household finances. Add your accounts, income and expenses to see where your "
        "balance is heading."
    ),
    "primary_action_label": "Get started",
    "primary_action_href": "/manage",
}

# Serialises group creation inside one process; other processes are handled by the
# uniqueness constraints and the retry loop.
_provision_lock = threading.Lock()


class ProvisioningError(RuntimeError):
    """Raised when a user could not be bound to a group."""


def normalize_email(value):
    return (value or "").strip().lower()


def display_name_from_email(email):
    local_part = normalize_email(email).split("@", 1)[0]
    name = re.sub(r"[._-]+", " ", local_part).strip()
    if not name:
        return DEFAULT_DISPLAY_NAME
    return " ".join(word.capitalize() for word in name.split())


def get_user_profile(db, user_id):
    return db.execute("SELECT * FROM profiles WHERE user_id = ?", (user_id,)).fetchone()


def _provision_once(db, user, group_name, now):
    profile = get_user_profile(db, user["id"])
    if profile is not None:
        return profile["group_id"], False

    email = normalize_email(user["email"])
    invited = db.execute(
        "SELECT id, group_id FROM profiles WHERE email = ? AND user_id IS NULL",
        (email,),
    ).fetchone()
    if invited is not None:
        db.execute("UPDATE profiles SET user_id = ? WHERE id = ?", (user["id"], invited["id"]))
        logger.info("Bound user %s to invited profile in group %s", user["id"], invited["group_id"])
        return invited["group_id"], False

    # The group id mirrors the user id, so a half-finished earlier attempt leaves a
    # group we can pick up instead of creating a duplicate.
    group_id = user["id"]
    orphan = db.execute("SELECT id FROM household_groups WHERE id = ?", (group_id,)).fetchone()
    if orphan is None:
        db.execute(
            "INSERT INTO household_groups (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
            (group_id, group_name, now, now),
        )
    else:
        logger.warning("Recovering orphaned group %s for user %s", group_id, user["id"])
    db.execute(
        "INSERT INTO profiles (id, group_id, user_id, email, name, created_at) VALUES (?, ?, ?, ?, ?, ?)",
        (new_id(), group_id, user["id"], email, display_name_from_email(email), now),
    )
    return group_id, True


def provision_user(db, user, group_name=DEFAULT_GROUP_NAME, now=None):
    """Make sure ``user`` belongs to a group and return ``(group_id, created)``.

    Idempotent: a user that already has a profile keeps its group, and a
    pending invite for the user's e-mail is claimed before anything new is
    created. Runs with the group scope lifted because invites and orphaned
    groups have to be found across groups.
    """
    now = now or utc_now_text()
    with _provision_lock, db.system_scope():
        for attempt in range(1, MAX_PROVISION_ATTEMPTS + 1):
            try:
                group_id, created = _provision_once(db, user, group_name, now)
                ensure_welcome_notification(db, user["id"], now)
                db.commit()
                return group_id, created
            except INTEGRITY_ERRORS as exc:
                db.rollback()
                logger.warning(
                    "Provisioning attempt %s/%s for user %s hit a conflict: %s",
                    attempt,
                    MAX_PROVISION_ATTEMPTS,
                    user["id"],
                    exc,
                )
    raise ProvisioningError(f"Could not provision a group for user {user['id']}")


def ensure_welcome_notification(db, user_id, now=None):
    now = now or utc_now_text()
    cur = db.execute(
        """
        INSERT INTO notifications (
            id, user_id, type, title, body, primary_action_label, primary_action_href,
            dedupe_key, created_at, updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (user_id, dedupe_key) DO NOTHING
        """,
        (
            new_id(),
            user_id,
            WELCOME_NOTIFICATION["type"],
            WELCOME_NOTIFICATION["title"],
            WELCOME_NOTIFICATION["body"],
            WELCOME_NOTIFICATION["primary_action_label"],
            WELCOME_NOTIFICATION["primary_action_href"],
            WELCOME_DEDUPE_KEY,
            now,
            now,
        ),
    )
    created = cur.rowcount == 1
    notification = db.execute(
        "SELECT id FROM notifications WHERE user_id = ? AND dedupe_key = ?",
        (user_id, WELCOME_DEDUPE_KEY),
    ).fetchone()
    return {"created": created, "notification_id": notification["id"]}


def get_group(db, group_id):
    group = row_to_dict(db.execute("SELECT * FROM household_groups WHERE id = ?", (group_id,)).fetchone())
    if group is None:
        return None
    members = db.execute(
        "SELECT id, email, name, user_id FROM profiles WHERE group_id = ? ORDER BY user_id IS NULL, created_at ASC, email ASC",
        (group_id,),
    ).fetchall()
    group["members"] = [
        {
            "id": member["id"],
            "email": member["email"],
            "name": member["name"],
            "status": "active" if member["user_id"] else "invited",
        }
        for member in members
    ]
    return group
