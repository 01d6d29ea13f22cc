class CairnError(Exception):
    """Base class for cairn-specific errors."""

    tag = "error"


# Repository state
class AlreadyInitialized(CairnError):
    tag = "error_repository"


class RepositoryBroken(CairnError):
    tag = "error_repository"


class RepositoryNotFound(CairnError):
    tag = "error_repository"


class BackendUnavailable(CairnError):
    tag = "error_repository"


class ObjectNotFound(BackendUnavailable):
    pass


class ObjectExists(BackendUnavailable):
    pass


# Request / credentials
class InvalidRequest(CairnError):
    tag = "error_invalid_request"


class PasswordMismatch(CairnError):
    tag = "error_password"


class AuthenticationFailed(CairnError):
    tag = "error_key"


class PolynomialGenerationExhausted(CairnError):
    tag = "error_key"


class Cancelled(CairnError):
    tag = "error_cancelled"


# Packs / blobs
class PackFormatError(CairnError):
    tag = "error_pack"


class BlobNotFound(CairnError):
    tag = "error_pack"
