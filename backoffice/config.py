"""Runtime configuration: every knob comes from the environment."""

import os

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:////tmp/backoffice.db").strip()

# ── Dealer identity (documents + export filenames) ──
DEALER_NAME = os.environ.get("DEALER_NAME", "ST Motors GmbH")
DEALER_SLUG = os.environ.get("DEALER_SLUG", "st-motors")
DEALER_STREET = os.environ.get("DEALER_STREET", "Am Wolfsberg 4")
DEALER_CITY = os.environ.get("DEALER_CITY", "28865 Lilienthal")
DEALER_PHONE = os.environ.get("DEALER_PHONE", "+49 4298 9099069")
DEALER_EMAIL = os.environ.get("DEALER_EMAIL", "info@st-motors.de")
DEALER_IBAN = os.environ.get("DEALER_IBAN", "")
DEALER_BIC = os.environ.get("DEALER_BIC", "")

VAT_RATE = float(os.environ.get("VAT_RATE", "0.19"))

# ── Identifier allocation ──
ALLOCATOR_MAX_ATTEMPTS = int(os.environ.get("ALLOCATOR_MAX_ATTEMPTS", "5"))
ALLOCATOR_BACKOFF_BASE = float(os.environ.get("ALLOCATOR_BACKOFF_BASE", "0.05"))  # seconds
