"""CloudWatch custom metrics for subscription business events and webhook outcomes.

All functions are fire-and-forget: they catch exceptions internally and log
warnings via structlog. They NEVER raise or block the caller.

boto3 is synchronous, so calls are dispatched to a ThreadPoolExecutor.
Emission is skipped entirely unless ``metrics_enabled`` is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

import boto3
import structlog

from reconciler.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().cloudwatch_region)
    return _cw_client


def _put_metric(metric_name: str, dimensions: list[dict], value: float = 1.0) -> None:
    """Synchronous put_metric_data. Runs in thread pool."""
    try:
        _get_client().put_metric_data(
            Namespace=get_settings().cloudwatch_namespace,
            MetricData=[{
                "MetricName": metric_name,
                "Dimensions": dimensions,
                "Value": value,
                "Unit": "Count",
                "Timestamp": datetime.now(UTC),
            }],
        )
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric_name)


def _submit(metric_name: str, dimensions: list[dict]) -> None:
    if not get_settings().metrics_enabled:
        return
    loop = asyncio.get_running_loop()
    loop.run_in_executor(_executor, _put_metric, metric_name, dimensions)


async def emit_business_event(event_name: str, user_id: str | None = None, provider: str | None = None) -> None:
    """Emit a subscription business event (new_subscription, subscription_cancelled, ...)."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if provider:
        dimensions.append({"Name": "Provider", "Value": provider})
    if user_id:
        dimensions.append({"Name": "UserId", "Value": user_id})
    _submit("EventCount", dimensions)


async def emit_webhook_outcome(provider: str, outcome: str, status_code: int) -> None:
    """Count webhook deliveries by provider and outcome (processed, duplicate, failed, rejected)."""
    _submit(
        "WebhookCount",
        [
            {"Name": "Provider", "Value": provider},
            {"Name": "Outcome", "Value": outcome},
            {"Name": "StatusCode", "Value": str(status_code)},
        ],
    )
