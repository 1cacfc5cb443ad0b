# app/core/config.py
import os
import json
import logging
from dotenv import load_dotenv
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

# 项目根目录
BASE_DIR = Path(__file__).resolve().parent.parent.parent

# 加载 .env 文件 (已存在的环境变量优先)
env_path = BASE_DIR / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def load_key_from_file(key_path_str: Optional[str]) -> Optional[str]:
    if not key_path_str:
        return None
    key_path = BASE_DIR / key_path_str
    if key_path.exists():
        with open(key_path, "r") as f:
            return f.read()
    logger.warning("Key file not found at %s", key_path)
    return None


class Settings:
    PROJECT_NAME: str = os.getenv("PROJECT_NAME", "Guardian Dispatch")
    PROJECT_VERSION: str = os.getenv("PROJECT_VERSION", "1.0.0")
    DEBUG: bool = _env_bool("DEBUG", "False")
    API_V1_STR: str = os.getenv("API_V1_STR", "/api/v1")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Storage: "mongo" for production, "memory" for local runs and tests
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "mongo").lower()
    MONGO_URI: Optional[str] = os.getenv("MONGO_URI")
    MONGO_DB_NAME: Optional[str] = os.getenv("MONGO_DB_NAME")
    MONGO_TIMEOUT_MS: int = int(os.getenv("MONGO_TIMEOUT_MS", 5000))

    # MQTT (optional; without a broker events are only logged)
    MQTT_BROKER_HOST: Optional[str] = os.getenv("MQTT_BROKER_HOST")
    MQTT_BROKER_PORT: int = int(os.getenv("MQTT_BROKER_PORT", 1883))
    MQTT_USERNAME: Optional[str] = os.getenv("MQTT_USERNAME")
    MQTT_PASSWORD: Optional[str] = os.getenv("MQTT_PASSWORD")
    MQTT_CLIENT_ID_PREFIX: str = os.getenv("MQTT_CLIENT_ID_PREFIX", "dispatch_backend_")
    EVENT_QUEUE_MAXSIZE: int = int(os.getenv("EVENT_QUEUE_MAXSIZE", 1000))

    # JWT (parent tokens are issued by the account service)
    RSA_PRIVATE_KEY_PATH: Optional[str] = os.getenv("RSA_PRIVATE_KEY_PATH")
    RSA_PUBLIC_KEY_PATH: Optional[str] = os.getenv("RSA_PUBLIC_KEY_PATH")
    ALGORITHM: str = os.getenv("ALGORITHM", "RS256")
    JWT_SECRET_KEY: Optional[str] = os.getenv("JWT_SECRET_KEY")
    ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

    RSA_PRIVATE_KEY: Optional[str] = load_key_from_file(RSA_PRIVATE_KEY_PATH)
    RSA_PUBLIC_KEY: Optional[str] = load_key_from_file(RSA_PUBLIC_KEY_PATH)

    # Command dispatch
    COMMAND_MAX_RETRIES: int = int(os.getenv("COMMAND_MAX_RETRIES", 5))
    COMMAND_DEFAULT_TTL_HOURS: int = int(os.getenv("COMMAND_DEFAULT_TTL_HOURS", 24))
    COMMAND_CRITICAL_TTL_HOURS: int = int(os.getenv("COMMAND_CRITICAL_TTL_HOURS", 168))
    STORE_CONFLICT_RETRIES: int = int(os.getenv("STORE_CONFLICT_RETRIES", 3))
    ESCALATE_COMMAND_FAILURES: bool = _env_bool("ESCALATE_COMMAND_FAILURES", "True")

    # Presence
    OFFLINE_THRESHOLD_MINUTES: int = int(os.getenv("OFFLINE_THRESHOLD_MINUTES", 15))

    # Maintenance jobs
    SCHEDULER_ENABLED: bool = _env_bool("SCHEDULER_ENABLED", "True")
    OFFLINE_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("OFFLINE_SWEEP_INTERVAL_SECONDS", 300))
    OFFLINE_SWEEP_BATCH_SIZE: int = int(os.getenv("OFFLINE_SWEEP_BATCH_SIZE", 500))
    COMMAND_EXPIRY_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("COMMAND_EXPIRY_SWEEP_INTERVAL_SECONDS", 600))
    ALERT_RETENTION_DAYS: int = int(os.getenv("ALERT_RETENTION_DAYS", 90))
    ALERT_RETENTION_SWEEP_INTERVAL_SECONDS: int = int(os.getenv("ALERT_RETENTION_SWEEP_INTERVAL_SECONDS", 86400))

    # Notification gateways (unset -> notification is logged only)
    PUSH_GATEWAY_URL: Optional[str] = os.getenv("PUSH_GATEWAY_URL")
    EMAIL_GATEWAY_URL: Optional[str] = os.getenv("EMAIL_GATEWAY_URL")
    SMS_GATEWAY_URL: Optional[str] = os.getenv("SMS_GATEWAY_URL")
    NOTIFICATION_TIMEOUT_SECONDS: float = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", 10))

    # CORS
    BACKEND_CORS_ORIGINS_STR: Optional[str] = os.getenv("BACKEND_CORS_ORIGINS")
    BACKEND_CORS_ORIGINS: List[str] = []
    if BACKEND_CORS_ORIGINS_STR:
        try:
            BACKEND_CORS_ORIGINS = json.loads(BACKEND_CORS_ORIGINS_STR)
        except json.JSONDecodeError:
            logger.warning("BACKEND_CORS_ORIGINS is not a valid JSON list: %s", BACKEND_CORS_ORIGINS_STR)

    # 简单校验关键配置
    if STORE_BACKEND not in ("mongo", "memory"):
        raise ValueError(f"Unsupported STORE_BACKEND: {STORE_BACKEND}")
    if STORE_BACKEND == "mongo" and not MONGO_URI: raise ValueError("MONGO_URI not set")
    if STORE_BACKEND == "mongo" and not MONGO_DB_NAME: raise ValueError("MONGO_DB_NAME not set")
    if ALGORITHM.startswith("RS") and not RSA_PRIVATE_KEY and not RSA_PUBLIC_KEY:
        raise ValueError("RSA keys not loaded. Check RSA_PRIVATE_KEY_PATH / RSA_PUBLIC_KEY_PATH in .env.")
    if ALGORITHM.startswith("HS") and not JWT_SECRET_KEY:
        raise ValueError("JWT_SECRET_KEY not set for HS algorithm")
    if COMMAND_MAX_RETRIES < 0: raise ValueError("COMMAND_MAX_RETRIES must be >= 0")


settings = Settings()


def log_settings_summary() -> None:
    logger.info("--- Application Settings Loaded ---")
    logger.info("PROJECT_NAME: %s", settings.PROJECT_NAME)
    logger.info("DEBUG: %s", settings.DEBUG)
    logger.info("STORE_BACKEND: %s", settings.STORE_BACKEND)
    if settings.MONGO_URI:
        logger.info("MONGO_URI: %s", settings.MONGO_URI.split("@")[-1])
    logger.info("MQTT_BROKER_HOST: %s", settings.MQTT_BROKER_HOST or "<none, log transport>")
    logger.info("JWT ALGORITHM: %s", settings.ALGORITHM)
    logger.info("OFFLINE_THRESHOLD_MINUTES: %s", settings.OFFLINE_THRESHOLD_MINUTES)
    logger.info("COMMAND_MAX_RETRIES: %s", settings.COMMAND_MAX_RETRIES)
