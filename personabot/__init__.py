"""Persona chatbot with a paid, time-boxed entitlement reconciled via YooKassa webhooks."""

__version__ = "0.3.0"
