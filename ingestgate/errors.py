class IngestError(Exception):
    pass


class FetchError(IngestError):
    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PersistenceError(IngestError):
    pass


class LandingWriteError(PersistenceError):
    pass


class QuarantineWriteError(PersistenceError):
    pass


class FatalError(IngestError):
    pass


class ConfigurationError(FatalError):
    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"missing required configuration: {', '.join(missing)}")
        self.missing = missing


class CandidateLoadError(FatalError):
    pass


class LockContentionError(IngestError):
    def __init__(self, lock_name: str) -> None:
        super().__init__(f"another run holds the sync lock '{lock_name}'")
        self.lock_name = lock_name
