"""Monthly credit budgets and per-step cost guards."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from dateutil.relativedelta import relativedelta

from taskpilot.config import CreditSettings
from taskpilot.errors import InsufficientCreditsError, NotFoundError
from taskpilot.orchestrator.models import UserCreditView
from taskpilot.orchestrator.repository import TaskRepository
from taskpilot.storage.common import utc_now

logger = logging.getLogger(__name__)


def next_reset_date(now: datetime) -> datetime:
    """One calendar month after `now`, clamped to the month end."""

    return now + relativedelta(months=1)


class CreditLedger:
    """Read and enforce user credit budgets.

    Charges themselves are written by the executor checkpoint so that the
    usage record and the task progress commit together.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def ensure_user(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        monthly_credits: int | None = None,
    ) -> UserCreditView:
        return self.repository.ensure_user(
            user_id=user_id,
            display_name=display_name,
            monthly_credits=monthly_credits,
            credits_reset_at=next_reset_date(utc_now()),
        )

    def check_and_reset(self, user_id: str, *, now: datetime | None = None) -> UserCreditView:
        """Reset monthly usage when the reset date has passed."""

        now = now or utc_now()
        user = self._get_user(user_id)
        if now >= user.credits_reset_at:
            reset = self.repository.reset_credits_if_due(
                user_id=user_id,
                now=now,
                next_reset_at=next_reset_date(now),
            )
            if reset:
                logger.info("Monthly credits reset for user %s", user_id)
            user = self._get_user(user_id)
        return user

    def remaining(self, user_id: str, *, now: datetime | None = None) -> int:
        return self.check_and_reset(user_id, now=now).remaining

    def has_enough(self, user_id: str, needed: int, *, now: datetime | None = None) -> bool:
        user = self.check_and_reset(user_id, now=now)
        return user.credits_used + needed <= user.monthly_credits

    def require(self, user_id: str, needed: int, *, now: datetime | None = None) -> UserCreditView:
        """Raise InsufficientCreditsError unless `needed` fits the remaining budget."""

        user = self.check_and_reset(user_id, now=now)
        if user.credits_used + needed > user.monthly_credits:
            raise InsufficientCreditsError(needed=needed, available=user.remaining)
        return user

    def _get_user(self, user_id: str) -> UserCreditView:
        user = self.repository.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User not found: {user_id}")
        return user


@dataclass(slots=True)
class CostCheck:
    """Result of a cost guard check."""

    allowed: bool
    reason: str | None = None


def check_step_cost(
    *,
    estimated_credits: int,
    task_credits: int,
    settings: CreditSettings,
) -> CostCheck:
    """Reject steps whose estimate breaks the per-step or per-task limit."""

    if estimated_credits > settings.max_credits_per_step:
        return CostCheck(
            allowed=False,
            reason=(
                f"Step would use {estimated_credits} credits, exceeding per-step limit of "
                f"{settings.max_credits_per_step}"
            ),
        )
    projected = task_credits + estimated_credits
    if projected > settings.max_credits_per_task:
        return CostCheck(
            allowed=False,
            reason=(
                f"Task would use {projected} credits total, exceeding per-task limit of "
                f"{settings.max_credits_per_task}"
            ),
        )
    return CostCheck(allowed=True)
