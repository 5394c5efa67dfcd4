from dataclasses import dataclass, field

from .auth import AccountDirectory
from .config import Settings, get_settings
from .services import (
    AvailabilityChecker,
    BatchEventCreator,
    CalendarRegistry,
    ConflictDetector,
    ParallelExecutor,
)


@dataclass
class ServerContext:
    """Services shared by every tool for the lifetime of the server process."""

    settings: Settings = field(default_factory=get_settings)
    directory: AccountDirectory = field(init=False)
    registry: CalendarRegistry = field(init=False)
    executor: ParallelExecutor = field(init=False)
    batch: BatchEventCreator = field(init=False)
    conflicts: ConflictDetector = field(init=False)
    availability: AvailabilityChecker = field(init=False)

    def __post_init__(self) -> None:
        self.directory = AccountDirectory(self.settings.accounts_dir)
        self.registry = CalendarRegistry(ttl=self.settings.registry_ttl_seconds)
        self.executor = ParallelExecutor(
            max_concurrency=self.settings.max_concurrency,
            timeout=self.settings.timeout_seconds,
            retry_attempts=self.settings.retry_attempts,
            retry_delay=self.settings.retry_delay_seconds,
        )
        self.batch = BatchEventCreator(self.registry)
        self.conflicts = ConflictDetector(self.executor, self.settings.local_timezone)
        self.availability = AvailabilityChecker(self.executor)

    def accounts(self):
        return self.directory.accounts()

    def reload_accounts(self) -> bool:
        """Reload tokens from disk and drop cached calendar snapshots if the account set changed."""
        changed = self.directory.reload()
        if changed:
            self.registry.clear_cache()
        return changed
