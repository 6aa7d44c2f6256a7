"""Global test configuration: blank live credentials before any marketpay import."""

import os

# load_dotenv() never overrides these, so a local .env cannot leak real keys
# or mail settings into the tests.
for _name in (
    "STRIPE_SECRET_KEY",
    "STRIPE_SECRET_TEST_KEY",
    "SENDGRID_API_KEY",
    "SENDGRID_FROM_EMAIL",
    "SENDGRID_REPLY_TO_EMAIL",
):
    os.environ[_name] = ""
