import argparse
from datetime import date, timedelta

from cashflow_tracker import create_app
from cashflow_tracker.seed import ensure_test_user, seed_full_scenario, worker_context

DEMO_EMAIL = "demo@example.com"
DEMO_PASSWORD = "demo12345"


def demo_scenario(today):
    trip_date = today + timedelta(days=18)
    bonus_date = today + timedelta(days=25)
    return {
        "accounts": [
            {"name": "Checking", "type": "checking", "balance": 420000},
            {"name": "Savings", "type": "savings", "balance": 1500000},
        ],
        "projects": [
            {
                "name": "Salary",
                "amount": 850000,
                "frequency": "twice-monthly",
                "payment_schedule": {
                    "type": "twiceMonthly",
                    "firstDay": 5,
                    "secondDay": 20,
                    "firstAmount": 500000,
                    "secondAmount": 350000,
                },
            },
            {
                "name": "Freelance",
                "amount": 120000,
                "frequency": "weekly",
                "payment_schedule": {"type": "dayOfWeek", "dayOfWeek": 5},
                "certainty": "uncertain",
            },
            {"name": "Bonus", "amount": 300000, "date": bonus_date.isoformat(), "certainty": "probable"},
        ],
        "expenses": [
            {"name": "Rent", "amount": 380000, "due_day": 10},
            {"name": "Utilities", "amount": 45000, "due_day": 15},
            {"name": "School", "amount": 210000, "due_day": 31},
            {"name": "Trip", "amount": 250000, "date": trip_date.isoformat()},
        ],
        "credit_cards": [
            {"name": "Visa", "statement_balance": 260000, "due_day": 12},
            {"name": "Mastercard", "statement_balance": 90000, "due_day": 25},
        ],
    }


def main():
    parser = argparse.ArgumentParser(description="Seed a demo group, or one group per e2e worker")
    parser.add_argument("--workers", type=int, default=0, help="Also seed this many isolated e2e workers")
    parser.add_argument("--project", default="default", help="Test project name used in worker emails")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        app.init_db()
        db = app.get_db()
        scenario = demo_scenario(date.today())

        _, group_id = ensure_test_user(db, DEMO_EMAIL, DEMO_PASSWORD, group_name="Demo Household")
        seed_full_scenario(db, group_id, scenario)

        for worker_index in range(args.workers):
            context = worker_context(worker_index, args.project)
            _, worker_group = ensure_test_user(db, context["email"], group_name=context["group_name"])
            seed_full_scenario(db, worker_group, scenario, worker_index)
            print(f"Seeded worker {worker_index}: {context['email']}")

    print(f"Sample data generated. Login with {DEMO_EMAIL} / {DEMO_PASSWORD}")


if __name__ == "__main__":
    main()
