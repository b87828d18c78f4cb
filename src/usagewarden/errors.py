class UsageWardenError(Exception):
    """
    base class for all errors raised by usagewarden.
    """


class FetchError(UsageWardenError):
    """
    FetchError is raised when a usage source could not produce a
    reading: network failure, timeout, rejected credentials or a
    malformed payload. Always recovered by the coordinator.
    """

    def __init__(self, source: "str", reason: "str") -> "None":
        super().__init__(f"{source}: {reason}")
        self.source = source
        self.reason = reason


class ConfigurationError(UsageWardenError):
    """
    raised synchronously when configuration is malformed. Values are
    never clamped into range.
    """


class StoreError(UsageWardenError):
    """
    raised when snapshot or profile persistence fails.
    """
