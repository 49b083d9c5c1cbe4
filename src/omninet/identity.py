from __future__ import annotations

from typing import Any, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings

logger = Logger()


class IdentityDirectory:
    """Administrative contact lookup against the Cognito user pool."""

    def __init__(self, client: Any, user_pool_id: str | None) -> None:
        self._client = client
        self._user_pool_id = user_pool_id

    @classmethod
    def from_settings(cls, settings: Settings) -> IdentityDirectory:
        return cls(boto3.client("cognito-idp"), settings.user_pool_id)

    def get_email(self, user_id: str) -> str | None:
        """Return the user's email address, or ``None`` when it cannot be resolved."""
        if not self._user_pool_id:
            logger.warning("No user pool configured; cannot resolve owner contact", extra={"user_id": user_id})
            return None
        try:
            resp = cast(
                dict[str, Any],
                self._client.list_users(
                    UserPoolId=self._user_pool_id,
                    Filter=f'sub = "{user_id}"',
                    Limit=1,
                ),
            )
        except (ClientError, BotoCoreError):
            logger.exception("Identity lookup failed", extra={"user_id": user_id})
            return None

        for user in resp.get("Users", []):
            for attr in user.get("Attributes", []):
                if attr.get("Name") == "email" and attr.get("Value"):
                    return str(attr["Value"])
        logger.info("Identity lookup returned no email", extra={"user_id": user_id})
        return None
