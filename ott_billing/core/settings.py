from __future__ import annotations

import os
from dataclasses import dataclass


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default) not in ("0", "false", "False")


@dataclass(frozen=True)
class Settings:
    # AWS
    aws_region: str = os.environ.get("AWS_REGION", "us-east-1")

    # Cognito (optional wiring; auth is pluggable)
    cognito_user_pool_id: str = os.environ.get("COGNITO_USER_POOL_ID", "")
    cognito_region: str = os.environ.get("COGNITO_REGION", "")
    cognito_app_client_id: str = os.environ.get("COGNITO_APP_CLIENT_ID", "")
    cognito_expected_token_use: str = os.environ.get("COGNITO_EXPECTED_TOKEN_USE", "access")

    # DynamoDB tables
    accounts_table_name: str = os.environ.get("ACCOUNTS_TABLE_NAME", "accounts")
    accounts_customer_index: str = os.environ.get("ACCOUNTS_CUSTOMER_INDEX", "gateway_customer_id-index")
    billing_table_name: str = os.environ.get("BILLING_TABLE_NAME", "billing")
    plans_table_name: str = os.environ.get("PLANS_TABLE_NAME", "plans")

    # TTL
    ddb_ttl_attr: str = os.environ.get("DDB_TTL_ATTR", "ttl_epoch")

    # Stripe
    stripe_secret_key: str = os.environ.get("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
    stripe_success_url: str = os.environ.get("STRIPE_SUCCESS_URL", "")
    stripe_cancel_url: str = os.environ.get("STRIPE_CANCEL_URL", "")
    gateway_timeout_seconds: int = int(os.environ.get("GATEWAY_TIMEOUT_SECONDS", "10"))
    gateway_max_retries: int = int(os.environ.get("GATEWAY_MAX_RETRIES", "2"))

    # Checkout / reconciliation
    frontend_url: str = os.environ.get("FRONTEND_URL", "http://localhost:3000").rstrip("/")
    checkout_session_ttl_seconds: int = int(os.environ.get("CHECKOUT_SESSION_TTL_SECONDS", str(24 * 3600)))
    reconcile_max_attempts: int = int(os.environ.get("RECONCILE_MAX_ATTEMPTS", "5"))
    plan_cache_seconds: int = int(os.environ.get("PLAN_CACHE_SECONDS", "300"))

    # Service
    metrics_enabled: bool = _flag("METRICS_ENABLED", "1")
    log_level: str = os.environ.get("LOG_LEVEL", "INFO").upper()
    cors_origins: str = os.environ.get("CORS_ORIGINS", "*")


S = Settings()
