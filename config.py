import os
import sys

# ====================================================================================
# ENVIRONMENT CONFIGURATION: PROD / STAGE / LOCAL isolation via prefixes
# ====================================================================================
# All environment variables are read with the environment prefix:
#   - PROD: PROD_DATABASE_URL, PROD_LIGHTNING_API_KEY, PROD_CRYPTOMUS_API_KEY
#   - STAGE: STAGE_DATABASE_URL, STAGE_LIGHTNING_API_KEY, ...
#   - LOCAL: LOCAL_DATABASE_URL, ...
#
# A STAGE deployment can never pick up PROD_CRYPTOMUS_API_KEY by accident.
# ====================================================================================

APP_ENV = os.getenv("APP_ENV", "prod").lower()
if APP_ENV not in ("prod", "stage", "local"):
    print(f"ERROR: Invalid APP_ENV={APP_ENV}. Must be one of: prod, stage, local", file=sys.stderr)
    sys.exit(1)

IS_LOCAL = APP_ENV == "local"
IS_STAGE = APP_ENV == "stage"
IS_PROD = APP_ENV == "prod"


def env(key: str, default: str = "") -> str:
    """
    Read an environment variable with the environment prefix.

    Args:
        key: Variable name without prefix (e.g. "DATABASE_URL")
        default: Value returned when the variable is not set

    Example:
        env("DATABASE_URL") -> value of STAGE_DATABASE_URL when APP_ENV=stage
    """
    env_key = f"{APP_ENV.upper()}_{key}"
    return os.getenv(env_key, default)


# Unprefixed secrets are rejected so environments cannot be mixed up
_direct_usage_vars = ["DATABASE_URL", "LIGHTNING_API_KEY", "CRYPTOMUS_API_KEY", "CRYPTOMUS_MERCHANT_ID"]
for var in _direct_usage_vars:
    if os.getenv(var):
        print(f"ERROR: Direct usage of {var} is FORBIDDEN!", file=sys.stderr)
        print(f"ERROR: Use {APP_ENV.upper()}_{var} instead (via env('{var}'))", file=sys.stderr)
        sys.exit(1)

# ====================================================================================
# Persistence
# ====================================================================================
DATABASE_URL = env("DATABASE_URL")
REDIS_URL = env("REDIS_URL", default="")

# ====================================================================================
# Upstream proxy reseller (Lightning)
# ====================================================================================
LIGHTNING_API_URL = env("LIGHTNING_API_URL") or "https://resell.lightningproxies.net/api"
LIGHTNING_API_KEY = env("LIGHTNING_API_KEY")
# Bounded timeout for every upstream call (seconds)
LIGHTNING_API_TIMEOUT = float(env("LIGHTNING_API_TIMEOUT", default="15.0"))

# Provider key stored on subscriptions created through Lightning
DEFAULT_PROVIDER = env("DEFAULT_PROVIDER", default="lightning")

# Endpoint table for proxy activation (data, not code)
PROXY_ENDPOINTS_FILE = env(
    "PROXY_ENDPOINTS_FILE",
    default=os.path.join(os.path.dirname(os.path.abspath(__file__)), "proxy_endpoints.json"),
)

# Per-(user, service) provisioning lock; the TTL is renewed while the lock is held
PROVISIONING_LOCK_TTL = int(env("PROVISIONING_LOCK_TTL", default="120"))
PROVISIONING_LOCK_WAIT = int(env("PROVISIONING_LOCK_WAIT", default="10"))

# ====================================================================================
# Geolocation (ISP plans)
# ====================================================================================
IPINFO_URL = env("IPINFO_URL") or "https://ipinfo.io"
IPINFO_TOKEN = env("IPINFO_TOKEN")
IPIFY_URL = env("IPIFY_URL") or "https://api.ipify.org?format=json"
GEOLOCATION_TIMEOUT = float(env("GEOLOCATION_TIMEOUT", default="5.0"))

# ====================================================================================
# Payment gateway (Cryptomus)
# ====================================================================================
CRYPTOMUS_API_URL = env("CRYPTOMUS_API_URL") or "https://api.cryptomus.com/v1"
CRYPTOMUS_API_KEY = env("CRYPTOMUS_API_KEY")
CRYPTOMUS_MERCHANT_ID = env("CRYPTOMUS_MERCHANT_ID")
CRYPTOMUS_CALLBACK_ROUTE = env("CRYPTOMUS_CALLBACK_ROUTE")
CRYPTOMUS_RETURN_ROUTE = env("CRYPTOMUS_RETURN_ROUTE")
CRYPTOMUS_TIMEOUT = float(env("CRYPTOMUS_TIMEOUT", default="15.0"))

# Gateway statuses that fund the user's balance
SETTLED_PAYMENT_STATUSES = ("paid", "paid_over")

# ====================================================================================
# HTTP server / logging
# ====================================================================================
HTTP_HOST = env("HTTP_HOST", default="0.0.0.0")
HTTP_PORT = int(os.getenv("PORT") or env("HTTP_PORT") or "8080")
LOG_LEVEL = env("LOG_LEVEL", default="INFO").upper()


def validate_required() -> None:
    """
    Abort startup when a PROD deployment lacks a required secret.

    STAGE/LOCAL only warn: the service starts, and the affected operations fail
    with an upstream/gateway error until the variable is configured.
    """
    required = {
        "DATABASE_URL": DATABASE_URL,
        "LIGHTNING_API_KEY": LIGHTNING_API_KEY,
        "CRYPTOMUS_API_KEY": CRYPTOMUS_API_KEY,
        "CRYPTOMUS_MERCHANT_ID": CRYPTOMUS_MERCHANT_ID,
    }
    missing = [name for name, value in required.items() if not value]
    if not missing:
        print(f"INFO: Config loaded for environment: {APP_ENV.upper()}", flush=True)
        return
    for name in missing:
        if IS_PROD:
            print(f"ERROR: {APP_ENV.upper()}_{name} is REQUIRED in PROD!", file=sys.stderr)
        else:
            print(f"WARNING: {APP_ENV.upper()}_{name} is not set", file=sys.stderr)
    if IS_PROD:
        sys.exit(1)
