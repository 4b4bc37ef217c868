"""Popup UI controller."""

from .controller import PopupController

__all__ = ["PopupController"]
