from __future__ import annotations


class WebhookError(Exception):
    pass


class SignatureInvalidError(WebhookError):
    """Signature header missing, malformed, stale, or not matching the payload."""


class MalformedEventError(WebhookError):
    """Payload verified but is not a usable event document."""


class UnsupportedEventTypeError(WebhookError):
    def __init__(self, event_type: str) -> None:
        super().__init__(f"Unsupported event type: {event_type!r}.")
        self.event_type = event_type
