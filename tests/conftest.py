import os

os.environ.setdefault("FINANCE_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("FINANCE_PASSWORD_ROUNDS", "4")
os.environ.setdefault("FINANCE_TOKEN_SECRET", "test-signing-secret")
os.environ.setdefault("FINANCE_TIMEZONE", "Europe/Belgrade")
