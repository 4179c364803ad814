"""Downstream consumer service."""

from .client import ConsumerClient

__all__ = ["ConsumerClient"]
