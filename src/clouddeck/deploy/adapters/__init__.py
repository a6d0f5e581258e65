"""Hosting provider adapters for CloudDeck."""

from __future__ import annotations

from clouddeck.deploy.adapters.base import BaseAdapter

__all__ = ["BaseAdapter"]
