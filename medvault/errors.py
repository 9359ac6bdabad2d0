"""Exception hierarchy shared by the codec, token and storage layers."""


class MedVaultError(Exception):
    """Base class for every error raised by medvault."""


class EncryptionError(MedVaultError):
    pass


class DecryptionError(MedVaultError):
    pass


class TamperedDataError(DecryptionError):
    """Authentication tag did not verify: wrong key, wrong IV or modified ciphertext."""


class KeyFormatError(MedVaultError, ValueError):
    pass


class DuplicateTokenError(MedVaultError):
    pass


class ConcurrentUpdateError(MedVaultError):
    pass


class BlobNotFoundError(MedVaultError, KeyError):
    pass


class RegistryError(MedVaultError):
    """The burn registry could not be reached or answered with an error."""


class TokenValidationError(MedVaultError):
    code = "invalid"

    def __init__(self, reason: str, token_id: str | None = None):
        super().__init__(reason)
        self.reason = reason
        self.token_id = token_id


class TokenNotFoundError(TokenValidationError):
    code = "not_found"


class TokenInactiveError(TokenValidationError):
    code = "revoked"


class TokenExhaustedError(TokenValidationError):
    code = "exhausted"


class TokenExpiredError(TokenValidationError):
    code = "expired"


class TokenNotYetValidError(TokenValidationError):
    code = "not_yet_valid"


class AccessDeniedError(MedVaultError, PermissionError):
    pass
