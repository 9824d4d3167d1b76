"""
Exceptions raised by the APIBAN nftables client.

Every error carries the process exit status the command line entry point
reports when the error ends a run.
"""

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_FIREWALL = 2


class ApibanClientError(Exception):
    """Base exception for APIBAN client errors."""

    exit_code = EXIT_FAILURE


class ConfigError(ApibanClientError):
    """Exception raised when the configuration file cannot be used."""
    pass


class ConfigMissing(ConfigError):
    """No configuration file could be opened in any search location."""
    pass


class ConfigMalformed(ConfigError):
    """A configuration file was found but is not a valid document."""
    pass


class ConfigInvalid(ConfigError):
    """The configuration parsed but holds unusable values."""
    pass


class ConfigPersistError(ConfigError):
    """The configuration could not be written back to disk."""
    pass


class FirewallError(ApibanClientError):
    """Exception raised when an nftables operation fails."""

    exit_code = EXIT_FIREWALL


class BootstrapNoChain(FirewallError):
    """No input chain exists to host the set."""
    pass


class BootstrapSetCreate(FirewallError):
    """The set could not be created."""
    pass


class BootstrapVerifyFailed(FirewallError):
    """The set is still missing after bootstrap."""
    pass


class RuleBindFailed(FirewallError):
    """A drop rule referencing the set could not be installed."""
    pass


class FlushFailed(FirewallError):
    """The set could not be flushed."""
    pass


class ElementAddFailed(FirewallError):
    """A single address could not be added to the set."""
    pass


class FeedError(ApibanClientError):
    """Exception raised when the APIBAN feed cannot be read."""
    pass


class FetchTransient(FeedError):
    """A fetch failed in a way that may succeed on a later attempt."""
    pass


class FetchPermanent(FeedError):
    """A fetch failed in a way that retrying will not fix."""
    pass
