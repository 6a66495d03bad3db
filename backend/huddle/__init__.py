"""Huddle: real-time chat rooms, private messages, typing and read receipts."""

__version__ = "0.1.0"
