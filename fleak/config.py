import os
from datetime import timedelta


def _env_int(name, default):
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


def _env_float(name, default):
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


class Config:
    SECRET_KEY = os.getenv("SECRET_KEY", "DEV")
    DEBUG = os.getenv("FLASK_DEBUG", "0") == "1"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URI",
        "postgresql://postgres:postgres@db:5432/fleak_db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,   # test connection before use
        "pool_recycle": 1800,    # recycle every 30min
        "pool_size": 5,
        "max_overflow": 10
    }
    # optimistic-concurrency retries for a single Flake read-modify-write
    STORE_MAX_RETRIES = _env_int("STORE_MAX_RETRIES", 5)

    # Caller authentication (bearer tokens issued by the session service)
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
    JWT_TOKEN_LOCATION = ["headers"]
    JWT_HEADER_NAME = "Authorization"
    JWT_HEADER_TYPE = "Bearer"
    JWT_ALGORITHM = "HS256"
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(hours=24)

    SOCKETIO_ASYNC_MODE = os.getenv("SOCKETIO_ASYNC_MODE", "gevent")

    # Deep links for automatic verification
    DEEP_LINK_SECRET = os.getenv("DEEP_LINK_SECRET")
    DEEP_LINK_TTL_SECONDS = _env_int("DEEP_LINK_TTL_SECONDS", 2 * 60 * 60)
    DEEP_LINK_SCHEME = os.getenv("DEEP_LINK_SCHEME", "fleak://set-alarm")

    DEPOSIT_INTENT_TTL_SECONDS = _env_int("DEPOSIT_INTENT_TTL_SECONDS", 10 * 60)

    # Evidence pinning (Pinata / IPFS)
    PINATA_JWT = os.getenv("PINATA_JWT")
    PINATA_API_URL = os.getenv("PINATA_API_URL", "https://api.pinata.cloud/pinning/pinFileToIPFS")

    # AI adjudicator (Gemini REST API)
    GEMINI_API_KEY = os.getenv("API_KEY_GEMINI") or os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "models/gemini-pro-latest")
    GEMINI_ENDPOINT = os.getenv("GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com/v1beta")
    GEMINI_TEMPERATURE = _env_float("GEMINI_TEMPERATURE", 0.7)
    GEMINI_MAX_TOKENS = _env_int("GEMINI_MAX_TOKENS", 1000)
    AI_APPROVAL_THRESHOLD = _env_int("AI_APPROVAL_THRESHOLD", 60)

    # Bounded timeout for every outbound HTTP call
    EXTERNAL_TIMEOUT_SECONDS = _env_float("EXTERNAL_TIMEOUT_SECONDS", 15.0)

    # Escrow contract / oracle
    CONTRACT_CHAIN_ID = _env_int("CONTRACT_CHAIN_ID", 84532)
    CONTRACT_ADDRESS = os.getenv("CONTRACT_ADDRESS")
    CHAIN_RPC_URL = os.getenv("CHAIN_RPC_URL", "https://sepolia.base.org")
    ORACLE_PRIVATE_KEY = os.getenv("ORACLE_PRIVATE_KEY")
    ORACLE_TX_TIMEOUT_SECONDS = _env_float("ORACLE_TX_TIMEOUT_SECONDS", 60.0)
    ORACLE_GAS_LIMIT = _env_int("ORACLE_GAS_LIMIT", 200000)
