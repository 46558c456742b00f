"""Subscription lifecycle: event translation and the idempotent state machine."""

from ledger_engine.subscriptions.state_machine import SubscriptionStateMachine
from ledger_engine.subscriptions.stripe_events import translate_stripe_event

__all__ = ["SubscriptionStateMachine", "translate_stripe_event"]
