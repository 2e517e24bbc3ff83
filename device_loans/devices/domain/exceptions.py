class ConcurrencyConflictError(Exception):
    """Raised when a conditional save finds a different stored version than expected."""

    def __init__(self, device_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Device '{device_id}' version conflict: expected {expected_version}, found {actual_version}."
        )
        self.device_id = device_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DeltaRejectedError(Exception):
    """Base for business-rule rejections of a count delta. Not transient."""
    code = "rejected"

    def __init__(self, device_id: str, message: str):
        super().__init__(message)
        self.device_id = device_id
        self.message = message


class DeviceNotFoundError(DeltaRejectedError):
    code = "not_found"

    def __init__(self, device_id: str):
        super().__init__(device_id, f"Device with id '{device_id}' not found.")


class WouldGoNegativeError(DeltaRejectedError):
    code = "would_go_negative"

    def __init__(self, device_id: str, delta: int, candidate: int):
        super().__init__(
            device_id,
            f"Cannot apply delta {delta} to device '{device_id}': count would become {candidate}.",
        )
        self.delta = delta
        self.candidate = candidate
