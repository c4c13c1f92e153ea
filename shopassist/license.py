"""In-process license plan and usage limits.

The real license server is external; this quota service applies the plan
table locally and keeps usage counters in memory.
"""
import threading
from typing import Dict, Optional

import structlog

from shopassist import config
from shopassist.events import USAGE_TRACKED, EventBus
from shopassist.models import QuotaStatus

logger = structlog.get_logger()

METRIC_CONVERSATIONS = "conversations"
METRIC_ITEMS_INDEXED = "items_indexed"

FEATURE_BASIC_CHAT = "basic_chat"
FEATURE_PROACTIVE_TRIGGERS = "proactive_triggers"
FEATURE_CUSTOM_MESSAGES = "custom_messages"
FEATURE_ADD_TO_CART = "add_to_cart"
FEATURE_AUTO_COUPON = "auto_coupon"
FEATURE_UPSELL_CROSSSELL = "upsell_crosssell"
FEATURE_WHITE_LABEL = "white_label"
FEATURE_ADVANCED_AI = "advanced_ai"
FEATURE_CHAT_RECOVERY = "chat_recovery"

PLAN_CONFIGURATIONS = {
    "free": {
        "limits": {METRIC_CONVERSATIONS: 30, METRIC_ITEMS_INDEXED: 30},
        "features": {
            FEATURE_BASIC_CHAT: True,
            FEATURE_PROACTIVE_TRIGGERS: False,
            FEATURE_CUSTOM_MESSAGES: False,
            FEATURE_ADD_TO_CART: False,
            FEATURE_AUTO_COUPON: False,
            FEATURE_UPSELL_CROSSSELL: False,
            FEATURE_WHITE_LABEL: False,
            FEATURE_ADVANCED_AI: False,
            FEATURE_CHAT_RECOVERY: False,
        },
    },
    "pro": {
        "limits": {METRIC_CONVERSATIONS: 100, METRIC_ITEMS_INDEXED: 100},
        "features": {
            FEATURE_BASIC_CHAT: True,
            FEATURE_PROACTIVE_TRIGGERS: True,
            FEATURE_CUSTOM_MESSAGES: True,
            FEATURE_ADD_TO_CART: False,
            FEATURE_AUTO_COUPON: False,
            FEATURE_UPSELL_CROSSSELL: False,
            FEATURE_WHITE_LABEL: False,
            FEATURE_ADVANCED_AI: False,
            FEATURE_CHAT_RECOVERY: False,
        },
    },
    "unlimited": {
        "limits": {METRIC_CONVERSATIONS: 1000, METRIC_ITEMS_INDEXED: 2000},
        "features": {
            FEATURE_BASIC_CHAT: True,
            FEATURE_PROACTIVE_TRIGGERS: True,
            FEATURE_CUSTOM_MESSAGES: True,
            FEATURE_ADD_TO_CART: True,
            FEATURE_AUTO_COUPON: True,
            FEATURE_UPSELL_CROSSSELL: True,
            FEATURE_WHITE_LABEL: True,
            FEATURE_ADVANCED_AI: True,
            FEATURE_CHAT_RECOVERY: True,
        },
    },
}


class PlanQuota:
    """Quota service for one license plan."""

    def __init__(
        self,
        plan: Optional[str] = None,
        events: Optional[EventBus] = None,
        usage: Optional[Dict[str, int]] = None,
    ):
        """Initialize the quota service.

        Args:
            plan: Plan name from PLAN_CONFIGURATIONS (default from config)
            events: Bus receiving usage_tracked events
            usage: Starting counters, e.g. restored from the license server

        Raises:
            ValueError: If the plan is unknown
        """
        self.plan = plan or config.LICENSE_PLAN
        if self.plan not in PLAN_CONFIGURATIONS:
            raise ValueError(f"Unknown license plan: {self.plan}")
        self.events = events
        self._plan_config = PLAN_CONFIGURATIONS[self.plan]
        self._usage: Dict[str, int] = dict(usage or {})
        self._lock = threading.Lock()

    def get_limit(self, metric: str) -> Optional[int]:
        """Limit for a metric, or None if the plan does not cap it."""
        return self._plan_config["limits"].get(metric)

    def get_usage(self, metric: str) -> int:
        with self._lock:
            return self._usage.get(metric, 0)

    def check_limit(self, metric: str, amount: int = 1) -> QuotaStatus:
        return self._status(metric, self.get_usage(metric), amount)

    def _status(self, metric: str, used: int, amount: int) -> QuotaStatus:
        limit = self.get_limit(metric)
        if limit is None:
            return QuotaStatus(within_limits=True, remaining=-1, limit=None, used=used)
        return QuotaStatus(
            within_limits=used + amount <= limit,
            remaining=max(limit - used, 0),
            limit=limit,
            used=used,
        )

    def is_feature_enabled(self, feature: str) -> bool:
        return bool(self._plan_config["features"].get(feature, False))

    def reserve(self, metric: str, amount: int = 1) -> QuotaStatus:
        """Check the limit and take the usage in one step.

        Nothing is taken when the amount does not fit. Callers give back
        usage they did not end up needing with release().

        Returns:
            Status as it was before the reservation
        """
        with self._lock:
            used = self._usage.get(metric, 0)
            status = self._status(metric, used, amount)
            if status.within_limits:
                self._usage[metric] = used + amount

        if status.within_limits:
            self._announce(metric, amount, used + amount)
        return status

    def release(self, metric: str, amount: int = 1) -> None:
        """Give back usage taken by reserve()."""
        with self._lock:
            used = self._usage.get(metric, 0)
            amount = min(amount, used)
            total = used - amount
            self._usage[metric] = total

        if amount:
            self._announce(metric, -amount, total)

    def track_usage(self, metric: str, amount: int = 1) -> None:
        """Add to a usage counter and announce it."""
        with self._lock:
            total = self._usage.get(metric, 0) + amount
            self._usage[metric] = total

        self._announce(metric, amount, total)

    def _announce(self, metric: str, amount: int, total: int) -> None:
        logger.debug("usage_tracked", metric=metric, amount=amount, total=total, plan=self.plan)
        if self.events is not None:
            self.events.publish(USAGE_TRACKED, metric=metric, amount=amount, total=total)

    def reset_usage(self, metric: Optional[str] = None) -> None:
        """Start a new billing period for one or all metrics."""
        with self._lock:
            if metric is None:
                self._usage.clear()
            else:
                self._usage.pop(metric, None)
