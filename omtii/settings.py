# omtii/settings.py

from starlette.config import Config
from starlette.datastructures import Secret

try:
    config = Config(".env")
except FileNotFoundError:
    config = Config()

DATABASE_URL = config("DATABASE_URL", cast=Secret, default="sqlite:///./omtii.db")
TEST_DATABASE_URL = config("TEST_DATABASE_URL", cast=Secret, default="sqlite://")

SECRET_KEY = config("SECRET_KEY", cast=Secret, default="dev-secret-change-me")
ACCESS_TOKEN_EXPIRE_MINUTES = config("ACCESS_TOKEN_EXPIRE_MINUTES", cast=int, default=60)
REQUIRE_EMAIL_CONFIRMATION = config("REQUIRE_EMAIL_CONFIRMATION", cast=bool, default=False)

# Object storage
STORAGE_ROOT = config("STORAGE_ROOT", cast=str, default="./storage")
PUBLIC_BASE_URL = config("PUBLIC_BASE_URL", cast=str, default="http://127.0.0.1:8000")

# Seeded on first startup when no super admin exists
DEFAULT_ADMIN_EMAIL = config("DEFAULT_ADMIN_EMAIL", cast=str, default="admin@example.com")
DEFAULT_ADMIN_PASSWORD = config("DEFAULT_ADMIN_PASSWORD", cast=Secret, default="ChangeMe123")

# Kafka relay for backend change events
KAFKA_ENABLED = config("KAFKA_ENABLED", cast=bool, default=False)
KAFKA_BOOTSTRAP_SERVERS = config("KAFKA_BOOTSTRAP_SERVERS", cast=str, default="broker:19092")
KAFKA_CHANGES_TOPIC = config("KAFKA_CHANGES_TOPIC", cast=str, default="marketplace_changes")
