"""
Lending system dependencies
"""

from typing import Optional

from ..config import get_config
from ..loans import LoanLedger
from ..storage import StorageInterface, create_storage


class LendingSystem:
    """Storage and loan ledger wired from configuration"""

    def __init__(self, storage: Optional[StorageInterface] = None):
        config = get_config()
        if storage is None:
            storage = create_storage(config.database_url, timeout=config.database_timeout)
        self.storage = storage
        self.ledger = LoanLedger(self.storage)

    def close(self) -> None:
        self.storage.close()


# Global lending system instance, created on first request
lending_system: Optional[LendingSystem] = None


# Dependency to get lending system
def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system
