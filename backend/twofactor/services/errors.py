class TwoFactorError(Exception):
    """Base class for second-factor failures; ``kind`` names the failed check."""

    kind = 'TwoFactorError'

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind)


class InvalidCode(TwoFactorError):
    kind = 'InvalidCode'


class NotEnabled(TwoFactorError):
    kind = 'NotEnabled'


class NoBackupCodes(TwoFactorError):
    kind = 'NoBackupCodes'


class InvalidOrUsedCode(TwoFactorError):
    kind = 'InvalidOrUsedCode'


class CorruptState(TwoFactorError):
    kind = 'CorruptState'


class AlreadyEnabled(TwoFactorError):
    kind = 'AlreadyEnabled'


class InvalidTransition(TwoFactorError):
    kind = 'InvalidTransition'
