import os


def _bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return float(value.replace(",", "."))
    except ValueError:
        return default


class Config:
    BASE_DIR = os.path.dirname(os.path.dirname(__file__))
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_DIR = None if DATABASE_URL else os.path.join(BASE_DIR, "database")
    DB_PATH = DATABASE_URL or os.path.join(DATABASE_DIR, "faturamento.db")
    DB_AUTO_INIT = _bool_env("DB_AUTO_INIT", False)

    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-faturamento")
    LOG_JSON = _bool_env("LOG_JSON", True)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    BLING_MODE = os.environ.get("BLING_MODE", "mock")
    BLING_BASE_URL = os.environ.get("BLING_BASE_URL", "https://api.bling.com.br/Api/v3")
    BLING_CLIENT_ID = os.environ.get("BLING_CLIENT_ID")
    BLING_CLIENT_SECRET = os.environ.get("BLING_CLIENT_SECRET")
    BLING_TIMEOUT_SECONDS = _int_env("BLING_TIMEOUT_SECONDS", 20)
    BLING_VERIFY_SSL = _bool_env("BLING_VERIFY_SSL", True)
    BLING_RETRY_ATTEMPTS = _int_env("BLING_RETRY_ATTEMPTS", 2)
    BLING_RETRY_BACKOFF_MS = _int_env("BLING_RETRY_BACKOFF_MS", 800)
    BLING_TOKEN_EXPIRY_BUFFER_SECONDS = _int_env("BLING_TOKEN_EXPIRY_BUFFER_SECONDS", 300)
    BLING_NATUREZA_OPERACAO_PF_ID = os.environ.get("BLING_NATUREZA_OPERACAO_PF_ID")
    BLING_NATUREZA_OPERACAO_PJ_ID = os.environ.get("BLING_NATUREZA_OPERACAO_PJ_ID")
    BLING_POLL_ATTEMPTS = _int_env("BLING_POLL_ATTEMPTS", 4)
    BLING_POLL_INTERVAL_MS = _int_env("BLING_POLL_INTERVAL_MS", 1500)
    BLING_SIMULATOR_SEED = _int_env("BLING_SIMULATOR_SEED", 42)

    BLING_CIRCUIT_ENABLED = _bool_env("BLING_CIRCUIT_ENABLED", True)
    BLING_CIRCUIT_ERROR_RATE = _float_env("BLING_CIRCUIT_ERROR_RATE", 0.6)
    BLING_CIRCUIT_MIN_SAMPLES = _int_env("BLING_CIRCUIT_MIN_SAMPLES", 5)
    BLING_CIRCUIT_WINDOW_SECONDS = _int_env("BLING_CIRCUIT_WINDOW_SECONDS", 120)
    BLING_CIRCUIT_OPEN_SECONDS = _int_env("BLING_CIRCUIT_OPEN_SECONDS", 30)

    COMMISSION_DEFAULT_RATE = _float_env("COMMISSION_DEFAULT_RATE", 1.5)
    COMMISSION_RELEASE_DAY = _int_env("COMMISSION_RELEASE_DAY", 5)

    def __init__(self):
        env = os.environ.get("FLASK_ENV", "development").lower()
        if env == "production" and not self.DATABASE_URL:
            raise RuntimeError("DATABASE_URL nao definida para ambiente de producao.")
        if env == "production" and self.SECRET_KEY == "dev-secret-faturamento":
            raise RuntimeError("SECRET_KEY insegura para producao.")
