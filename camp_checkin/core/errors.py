"""
Domain exceptions of the check-in core.

Scan rejections ("already at camp", "already at this activity") are
normal outcomes and are not represented here.
"""


class CheckinError(Exception):
    """Base class for expected, user-facing failures."""


class ValidationError(CheckinError):
    pass


class InvalidQrCodeError(CheckinError):
    pass


class EventNotFoundError(CheckinError):
    pass


class ParticipantNotFoundError(CheckinError):
    pass


class ActivityNotFoundError(CheckinError):
    pass


class DuplicateParticipantError(CheckinError):
    pass


class DuplicateActivityError(CheckinError):
    pass


class ConcurrentScanError(CheckinError):
    """
    Another scan changed the participant's location between our read and
    our write. Nothing was persisted; the leader can scan again.
    """


class ResetNotAllowedError(CheckinError):
    pass
