import os

os.environ.setdefault("FINTRACK_DATABASE_URL", "sqlite://")
os.environ.setdefault("FINTRACK_SCHEDULER_ENABLED", "false")
os.environ.setdefault("FINTRACK_BASE_CURRENCY", "USD")
os.environ.setdefault("FINTRACK_FX_PROVIDER", "table")
