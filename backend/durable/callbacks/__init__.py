"""Callback correlation: one-shot tokens that resume waiting orchestrations."""

from .gateway import CallbackGateway
from .models import CorrelationToken
from .store import CorrelationStore, FileCorrelationStore

__all__ = ["CallbackGateway", "CorrelationStore", "CorrelationToken", "FileCorrelationStore"]
