import os

# Must be in place before quotepay.database is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_quotepay.db")
os.environ["AUTHORIZE_NET_ENVIRONMENT"] = "sandbox"
os.environ["AUTHORIZE_NET_LOGIN_ID"] = "test-login"
os.environ["AUTHORIZE_NET_TRANSACTION_KEY"] = "test-key"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["GHL_API_KEY"] = ""
os.environ["ANET_SIGNATURE_KEY"] = ""
