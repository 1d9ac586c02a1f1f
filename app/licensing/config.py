import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str
    local_storage_root: str

    smtp_server: str
    smtp_port: str
    smtp_use_tls: bool
    smtp_username: str
    smtp_password: str
    email_from: str
    admin_notify_email: str

    registration_open_override: bool
    quota_over_limit_policy: str
    co2_strict_units: bool
    counter_seed: int
    conflict_max_retries: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getflag(name: str, default: bool = False) -> bool:
    raw = _getenv(name, "1" if default else "0").lower()
    return raw in ("1", "true", "yes", "on")


def _getint(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///licensing.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        local_storage_root=_getenv("LOCAL_STORAGE_ROOT", ""),
        smtp_server=_getenv("SMTP_SERVER", ""),
        smtp_port=_getenv("SMTP_PORT", ""),
        smtp_use_tls=_getflag("SMTP_USE_TLS", default=True),
        smtp_username=_getenv("SMTP_USERNAME", ""),
        smtp_password=_getenv("SMTP_PASSWORD", ""),
        email_from=_getenv("EMAIL_FROM", ""),
        admin_notify_email=_getenv("ADMIN_NOTIFY_EMAIL", ""),
        registration_open_override=_getflag("REGISTRATION_OPEN_OVERRIDE"),
        quota_over_limit_policy=_getenv("QUOTA_OVER_LIMIT_POLICY", "clamp").lower(),
        co2_strict_units=_getflag("CO2_STRICT_UNITS"),
        counter_seed=_getint("COUNTER_SEED", 1000),
        conflict_max_retries=_getint("CONFLICT_MAX_RETRIES", 3),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "LOCAL_STORAGE_ROOT": s.local_storage_root,
        # outbound email (notifications are best-effort)
        "SMTP_SERVER": s.smtp_server,
        "SMTP_PORT": s.smtp_port,
        "SMTP_USE_TLS": s.smtp_use_tls,
        "SMTP_USERNAME": s.smtp_username,
        "SMTP_PASSWORD": s.smtp_password,
        "EMAIL_FROM": s.email_from,
        "ADMIN_NOTIFY_EMAIL": s.admin_notify_email,
        # licensing policy
        "REGISTRATION_OPEN_OVERRIDE": s.registration_open_override,
        "QUOTA_OVER_LIMIT_POLICY": s.quota_over_limit_policy,
        "CO2_STRICT_UNITS": s.co2_strict_units,
        "COUNTER_SEED": s.counter_seed,
        "CONFLICT_MAX_RETRIES": s.conflict_max_retries,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,
    }
