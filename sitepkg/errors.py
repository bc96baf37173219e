class SitepkgError(Exception):
    """Base class for sitepkg-specific errors."""


# Manifest engine
class SourceMissingError(SitepkgError):
    pass


class EntryMissingError(SitepkgError):
    pass


class UnsupportedEntryError(SitepkgError):
    pass


# Sealed box / keys
class BoxFormatError(SitepkgError):
    pass


class UnsupportedAlgorithmError(BoxFormatError):
    pass


class UnusableKeyError(SitepkgError):
    pass


class AuthenticationError(SitepkgError):
    pass


# Pipeline collaborators
class CompressionError(SitepkgError):
    pass


class StorageError(SitepkgError):
    pass
