"""Error taxonomy for collection, view and cube construction."""


class StacCubesError(Exception):
    """Base class for all errors raised by stac_cubes."""


class ConfigurationError(StacCubesError, ValueError):
    """Invalid view, filter, expression or band configuration.

    Raised eagerly, before any asset is opened.
    """


class AssetReadError(StacCubesError):
    """A single asset could not be read.

    :param url: URL of the asset that failed
    :param reason: Underlying error message
    """

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to read asset {url}: {reason}")
        self.url = url
        self.reason = reason


class EmptyResultWarning(UserWarning):
    """A collection or a cube holds no valid observations."""
