"""Exception types shared by the updater modules."""


class UpdaterError(Exception):
    """Fatal for the whole run. The CLI logs it and exits with status 1."""


class ConfigError(UpdaterError):
    pass


class StateFileError(UpdaterError):
    pass


class CatalogError(UpdaterError):
    """The library could not be listed or reached."""


class StepError(Exception):
    """One step failed for one book. Recorded as a failure, the run continues."""

    def __init__(self, step: str, reason: str):
        super().__init__(f"{step}: {reason}")
        self.step = step
        self.reason = reason
