"""Subscription model, in-memory store and hub reconciler that distributes subscriptions through deployables."""

__version__ = "0.1.0"