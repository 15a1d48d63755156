"""Errors raised while handling a single signaling message.

Every one of these is recoverable: the router turns it into an
``{'type': 'error', 'message': ...}`` envelope for the sender.
"""
from typing import Optional


class SignalError(Exception):
    message = 'signaling error'

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.message)


class MissingRoomError(SignalError):
    message = 'join requires a room'


class NoActiveSessionError(SignalError):
    message = 'no active session'


class SessionFullError(SignalError):
    message = 'session is full'


class MalformedMessageError(SignalError):
    message = 'malformed message'
