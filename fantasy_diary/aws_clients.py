"""aws_clients.py — Lazy-singleton AWS service clients.

The client is built on first use so cold starts that never touch DynamoDB
(e.g. OPTIONS preflight) skip the boto3 construction cost.
"""
from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import DYNAMODB_REGION, logger

__all__ = [
    "_ddb",
    "_get_ddb",
    "_is_conditional_check_failed",
    "_reset_clients",
    "_table_available",
]

# ---------------------------------------------------------------------------
# AWS client singletons
# ---------------------------------------------------------------------------

_ddb = None
_table_availability: dict[str, bool] = {}


def _get_ddb():
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 5, "mode": "standard"}),
        )
    return _ddb


def _reset_clients() -> None:
    global _ddb
    _ddb = None
    _table_availability.clear()


def _is_conditional_check_failed(exc: Exception) -> bool:
    if not isinstance(exc, ClientError):
        return False
    return str(exc.response.get("Error", {}).get("Code", "")) == "ConditionalCheckFailedException"


def _table_available(table_name: Optional[str]) -> bool:
    """Probe a table once per container; the answer is cached."""
    if not table_name:
        return False
    cached = _table_availability.get(table_name)
    if cached is not None:
        return cached

    try:
        _get_ddb().describe_table(TableName=table_name)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        if code == "ResourceNotFoundException":
            logger.info("[INFO] DynamoDB table '%s' not found.", table_name)
        elif code in {"AccessDeniedException", "UnauthorizedOperation"}:
            logger.warning("[WARNING] Missing DescribeTable access for '%s'.", table_name)
        else:
            logger.warning("[WARNING] describe_table failed for '%s': %s", table_name, code)
        _table_availability[table_name] = False
        return False
    except BotoCoreError as exc:
        logger.warning("[WARNING] DynamoDB unreachable while probing '%s': %s", table_name, exc)
        _table_availability[table_name] = False
        return False

    _table_availability[table_name] = True
    return True
