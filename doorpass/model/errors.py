class DoorpassError(Exception):
    """Base class for errors raised by the ticketing core."""


class InvalidRequest(DoorpassError):
    """Input rejected before any storage access."""


class InvalidSignature(DoorpassError):
    """Webhook payload failed signature verification."""


class CodeExhaustion(DoorpassError):
    """No unique ticket code could be generated within the allowed attempts."""

    def __init__(self, attempts: int):
        super().__init__(
            f"unable to generate a unique ticket code after {attempts} "
            "attempts"
        )
        self.attempts = attempts


class SequenceExhausted(DoorpassError):
    """The three-digit ticket sequence ran past 999."""

    def __init__(self, value: int):
        super().__init__(
            f"maximum ticket code sequence (999) reached, got {value}"
        )
        self.value = value


class TicketCreationFailed(DoorpassError):
    """Ticket insert failed for a reason other than a code collision."""
