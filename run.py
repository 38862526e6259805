"""Local development entry point for the billing API.

Usage:
    python run.py

Reads .env first so STRIPE_* / DATABASE_URL / CRON_SECRET are available
to the config classes. Scheduled jobs run through the Flask CLI instead:
    flask --app run sync-subscriptions
"""

from dotenv import load_dotenv

load_dotenv()  # Load .env before the config module reads os.environ

from studydeck_billing import create_app

app = create_app()

if __name__ == "__main__":
    app.run(debug=True, host="0.0.0.0", port=int(app.config.get("PORT", 5000)))
