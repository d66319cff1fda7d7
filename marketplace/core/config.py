import os
from decimal import Decimal

from dotenv import load_dotenv

# Carrega o .env da raiz do projeto
load_dotenv()


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./marketplace.db")
DATABASE_ECHO = _env_flag("DATABASE_ECHO")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}

# CORS
_cors_env = os.getenv("ORIGENS_CORS", os.getenv("CORS_ORIGINS", ""))
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and IS_DEV:
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ]

# Gateway PIX
PIX_GATEWAY = os.getenv("PIX_GATEWAY", "mock").strip().lower()
ABACATEPAY_API_KEY = os.getenv("ABACATEPAY_API_KEY", "")
ABACATEPAY_BASE_URL = os.getenv("ABACATEPAY_BASE_URL", "https://api.abacatepay.com").rstrip("/")
PIX_EXPIRES_IN_SECONDS = int(os.getenv("PIX_EXPIRES_IN_SECONDS", "3600"))
# 0 = reaproveita qualquer cobrança ainda não expirada
PIX_REUSE_MIN_REMAINING_SECONDS = int(os.getenv("PIX_REUSE_MIN_REMAINING_SECONDS", "0"))
PAYMENT_POLL_INTERVAL_SECONDS = float(os.getenv("PAYMENT_POLL_INTERVAL_SECONDS", "5"))
PLATFORM_FEE_RATE = Decimal(os.getenv("PLATFORM_FEE_RATE", "0.10"))

# Orçamentos
QUOTE_DEFAULT_VALIDITY_DAYS = int(os.getenv("QUOTE_DEFAULT_VALIDITY_DAYS", "7"))

# Presença / digitando
TYPING_TTL_SECONDS = float(os.getenv("TYPING_TTL_SECONDS", "5"))
TYPING_THROTTLE_SECONDS = float(os.getenv("TYPING_THROTTLE_SECONDS", "2"))

# Timeline
TIMELINE_TIMEZONE = os.getenv("TIMELINE_TIMEZONE", "America/Sao_Paulo")

# Arquivos do chat
CHAT_STORAGE = os.getenv("CHAT_STORAGE", "local").strip().lower()
CHAT_UPLOADS_DIR = os.getenv("CHAT_UPLOADS_DIR", "uploads/chat-files")
CHAT_PUBLIC_BASE_URL = os.getenv("CHAT_PUBLIC_BASE_URL", "/uploads/chat-files").rstrip("/")
MAX_CHAT_FILE_BYTES = int(os.getenv("MAX_CHAT_FILE_BYTES", str(10 * 1024 * 1024)))
