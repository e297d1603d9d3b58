"""
Banking system wiring

Builds every manager on one storage, audit trail, ledger and event
dispatcher.
"""

from typing import Optional

from .accounts import AccountManager
from .audit import AuditTrail
from .config import AvenirConfig, get_config
from .credits import CreditManager
from .events import EventDispatcher
from .investments import OrderBook, StockCatalog
from .ledger import TransactionLedger
from .logging_config import setup_logging
from .messaging import MessagingService
from .notifications import NotificationService
from .savings import SavingsRateManager
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .transactions import TransactionProcessor
from .users import EmailSender, UserManager


class BankingSystem:
    """Avenir bank with all components initialized"""

    def __init__(self, config: Optional[AvenirConfig] = None,
                 storage: Optional[StorageInterface] = None,
                 email_sender: Optional[EmailSender] = None):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        # Initialize core components
        self.event_dispatcher = EventDispatcher()
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.ledger = TransactionLedger(self.storage)

        self.user_manager = UserManager(
            self.storage, self.audit_trail, email_sender=email_sender,
            config=self.config, event_dispatcher=self.event_dispatcher
        )
        self.account_manager = AccountManager(
            self.storage, self.user_manager, self.audit_trail, self.ledger,
            config=self.config, event_dispatcher=self.event_dispatcher
        )
        self.transaction_processor = TransactionProcessor(
            self.storage, self.account_manager, self.user_manager, self.audit_trail,
            self.ledger, config=self.config, event_dispatcher=self.event_dispatcher
        )
        self.notification_service = NotificationService(
            self.storage, self.user_manager, self.audit_trail,
            event_dispatcher=self.event_dispatcher, config=self.config
        )
        self.savings_manager = SavingsRateManager(
            self.storage, self.user_manager, self.account_manager,
            self.notification_service, self.audit_trail, self.ledger,
            event_dispatcher=self.event_dispatcher
        )
        self.credit_manager = CreditManager(
            self.storage, self.user_manager, self.account_manager, self.audit_trail,
            self.ledger, event_dispatcher=self.event_dispatcher
        )
        self.stock_catalog = StockCatalog(
            self.storage, self.audit_trail, event_dispatcher=self.event_dispatcher
        )
        self.order_book = OrderBook(
            self.storage, self.stock_catalog, self.account_manager, self.audit_trail,
            self.ledger, config=self.config, event_dispatcher=self.event_dispatcher
        )
        self.messaging_service = MessagingService(
            self.storage, self.user_manager, self.notification_service,
            self.audit_trail, event_dispatcher=self.event_dispatcher
        )

    def close(self) -> None:
        self.storage.close()


_banking_system: Optional[BankingSystem] = None


def get_banking_system() -> BankingSystem:
    """Process-wide banking system, built from the global configuration on first use"""
    global _banking_system
    if _banking_system is None:
        config = get_config()
        setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
        _banking_system = BankingSystem(config)
    return _banking_system
