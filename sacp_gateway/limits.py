"""
Limit / step-up evaluation.

The wallet decides whether a payment needs human approval; this evaluator
predicts that answer from a fresh `SpendingLimits` snapshot so the gateway
can log it and explain a step-up to the agent.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from sacp_gateway.models import SpendingLimits


class LimitReason(str, Enum):
    EXCEEDS_PER_TRANSACTION = "exceeds_per_transaction"
    EXCEEDS_DAILY_REMAINING = "exceeds_daily_remaining"
    EXCEEDS_MONTHLY_REMAINING = "exceeds_monthly_remaining"
    CURRENCY_MISMATCH = "currency_mismatch"


class LimitDecision(BaseModel):
    requires_step_up: bool
    reasons: list[LimitReason] = []

    @property
    def auto_approve(self) -> bool:
        return not self.requires_step_up


def evaluate(amount: int, currency: str, limits: SpendingLimits) -> LimitDecision:
    reasons: list[LimitReason] = []
    if currency.upper() != limits.currency.upper():
        reasons.append(LimitReason.CURRENCY_MISMATCH)
    if amount > limits.per_transaction:
        reasons.append(LimitReason.EXCEEDS_PER_TRANSACTION)
    if amount > limits.daily_remaining:
        reasons.append(LimitReason.EXCEEDS_DAILY_REMAINING)
    if limits.monthly_remaining is not None and amount > limits.monthly_remaining:
        reasons.append(LimitReason.EXCEEDS_MONTHLY_REMAINING)
    return LimitDecision(requires_step_up=bool(reasons), reasons=reasons)
