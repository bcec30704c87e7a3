"""Scripted traffic generator for the chatsync API."""

from .sim import ISim, Sim

__all__ = ["ISim", "Sim"]
