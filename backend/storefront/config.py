# backend/storefront/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///storefront.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Payment code day keys (PD-YYMMDD-...) follow the shop's calendar day
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Asia/Ulaanbaatar")

    # Bearer token for admin routes; empty disables them
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN", "")

    # QPay v2 merchant API
    QPAY_BASE_URL = os.environ.get("QPAY_BASE_URL", "https://merchant-sandbox.qpay.mn")
    QPAY_CLIENT_ID = os.environ.get("QPAY_CLIENT_ID") or os.environ.get("QPAY_USERNAME")
    QPAY_CLIENT_SECRET = os.environ.get("QPAY_CLIENT_SECRET") or os.environ.get("QPAY_PASSWORD")
    QPAY_INVOICE_CODE = os.environ.get("QPAY_INVOICE_CODE")
    QPAY_WEBHOOK_SECRET = os.environ.get("QPAY_WEBHOOK_SECRET")
    QPAY_TIMEOUT_SECONDS = float(os.environ.get("QPAY_TIMEOUT_SECONDS", "10"))
    QPAY_CALLBACK_URL = os.environ.get("QPAY_CALLBACK_URL", "http://localhost:8002/api/qpay/callback")
