import os
from dotenv import load_dotenv

# Load Environment Variables from project root .env
env_path = os.path.join(os.path.dirname(__file__), "../.env")
load_dotenv(env_path)


def _split_endpoints(raw: str) -> list:
    """Comma-separated endpoint list, order preserved, duplicates dropped."""
    urls = [u.strip() for u in raw.split(",") if u.strip()]
    return list(dict.fromkeys(urls))


class Settings:
    # ═══════════════════════════════════════════════════════════════════
    # PERPS REQUEST TRACKER CONFIGURATION
    # ═══════════════════════════════════════════════════════════════════

    # --- Console ---
    SILENT_MODE = os.getenv("SILENT_MODE", "false").lower() == "true"

    # Paths
    LOG_DIR = os.getenv("PERPS_LOG_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "../logs")))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG").upper()
    DATA_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../data"))
    DB_PATH = os.getenv("PERPS_DB_PATH", os.path.join(DATA_DIR, "perps_tracker.db"))

    # ═══════════════════════════════════════════════════════════════════
    # RPC ENDPOINTS (ordered: first = primary)
    # ═══════════════════════════════════════════════════════════════════
    RPC_URL = os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
    RPC_ENDPOINTS = _split_endpoints(
        os.getenv(
            "RPC_ENDPOINTS",
            ",".join(
                [
                    RPC_URL,
                    "https://rpc.ankr.com/solana",
                    "https://solana-rpc.publicnode.com",
                ]
            ),
        )
    )
    RPC_TIMEOUT_SEC = float(os.getenv("RPC_TIMEOUT_SEC", "10"))

    # ─── Transaction Assembly ───
    COMPUTE_UNIT_LIMIT = int(os.getenv("COMPUTE_UNIT_LIMIT", "1400000"))
    PRIORITY_FEE_MICRO_LAMPORTS = int(os.getenv("PRIORITY_FEE_MICRO_LAMPORTS", "100000"))
    BLOCKHASH_MAX_ATTEMPTS = 3  # Fresh chain-head reference: bounded retries
    SKIP_PREFLIGHT = False

    # ─── Trade Defaults ───
    # Price tolerance in USD with 6 decimals (0.10 USD)
    DEFAULT_MAX_SLIPPAGE = 100_000
    DEFAULT_LEVERAGE = "5"

    # ═══════════════════════════════════════════════════════════════════
    # LIFECYCLE MONITORING
    # ═══════════════════════════════════════════════════════════════════
    MONITOR_INTERVAL_SEC = float(os.getenv("MONITOR_INTERVAL_SEC", "30"))
    CONFIRMATION_MAX_POLLS = int(os.getenv("CONFIRMATION_MAX_POLLS", "6"))

    # ─── Price Feed (Pyth Hermes) ───
    PYTH_HTTP_URL = os.getenv(
        "PYTH_HTTP_URL", "https://hermes.pyth.network/api/latest_price_feeds"
    )
    PRICE_FEED_TIMEOUT_SEC = 5.0

    # ─── Notifications ───
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
    TELEGRAM_ENABLED = os.getenv("TELEGRAM_ENABLED", "true").lower() == "true"
