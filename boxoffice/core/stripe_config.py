import os
import stripe
from dotenv import load_dotenv
load_dotenv()

# Secrets are read from the environment on every call, never held at module level.


def get_webhook_secret() -> str | None:
    return os.getenv("STRIPE_WEBHOOK_SECRET") or None


def get_ticket_signing_secret() -> str | None:
    return os.getenv("TICKET_SIGNING_SECRET") or None


def configure_stripe_client() -> None:
    stripe.api_key = os.getenv("STRIPE_API_KEY")
