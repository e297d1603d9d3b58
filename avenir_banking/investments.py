"""
Investments Module

Stock catalog managed by directors and a limit order book for clients.
Order-book arithmetic is done in integer cents. Each client holds an
investment wallet (cash in cents) funded from and withdrawn to their
bank accounts.

Matching rules:
- a buy reserves quantity * limit price and pays the flat fee up front
- a sell reserves the shares and pays the fee out of its first fill
- the best crossing counter-order is picked first (lowest ask for a buy,
  highest bid for a sell), oldest first on equal prices
- trades execute at the rounded midpoint of both limits; the buyer gets
  back the difference between its limit and the trade price
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import logging
import uuid

from .accounts import AccountManager
from .audit import AuditTrail, AuditEventType
from .config import AvenirConfig, get_config
from .currency import Money, Currency, NumberLike, as_money, parse_amount, to_decimal
from .errors import (
    ForbiddenError, InsufficientFundsError, NotFoundError, ValidationError
)
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .ledger import TransactionLedger, TransactionType
from .logging_config import correlation_scope, log_action
from .storage import StorageInterface, StorageRecord

logger = logging.getLogger("avenir.investments")

MAX_SYMBOL_LENGTH = 10
MIN_NAME_LENGTH = 3


def to_cents(value: NumberLike) -> int:
    """Euros to integer cents, half up"""
    try:
        return int((to_decimal(value) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise ValidationError("Montant invalide")


def cents_to_decimal(cents: int) -> Decimal:
    return Decimal(int(cents)).scaleb(-2)


def format_cents(cents: int) -> str:
    sign = '-' if cents < 0 else ''
    euros, rest = divmod(abs(cents), 100)
    return f"{sign}{euros}.{rest:02d} €"


def calculate_order_total(quantity: int, limit_price: NumberLike,
                          fee: NumberLike = 1) -> Dict[str, Decimal]:
    """Notional, fees and total cost of an order, in euros"""
    notional = quantity * to_decimal(limit_price)
    fees = to_decimal(fee)
    return {'notional': notional, 'fees': fees, 'total': notional + fees}


@dataclass
class Stock(StorageRecord):
    symbol: str
    name: str
    is_available: bool
    initial_price_cents: int
    last_price_cents: int

    @property
    def current_price(self) -> Decimal:
        return cents_to_decimal(self.last_price_cents)


@dataclass
class InvestmentWallet(StorageRecord):
    """Uninvested cash of one user; the record id is the user id"""
    user_id: str
    cash_cents: int = 0

    @property
    def cash(self) -> Money:
        return Money.from_cents(self.cash_cents)


@dataclass
class StockHolding(StorageRecord):
    user_id: str
    stock_id: str
    quantity: int = 0


class OrderSide(Enum):
    BUY = "BUY"
    SELL = "SELL"

    @classmethod
    def parse(cls, value: Union['OrderSide', str]) -> 'OrderSide':
        if isinstance(value, OrderSide):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValidationError("Sens invalide")


class OrderStatus(Enum):
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


OPEN_STATUSES = (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


@dataclass
class StockOrder(StorageRecord):
    user_id: str
    stock_id: str
    side: OrderSide
    quantity: int
    remaining_quantity: int
    limit_price_cents: int
    fee_cents: int
    status: OrderStatus = OrderStatus.OPEN
    fee_charged: bool = False
    reserved_cash_cents: int = 0
    reserved_quantity: int = 0

    @property
    def is_buy(self) -> bool:
        return self.side == OrderSide.BUY

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def client_status(self) -> str:
        if self.status == OrderStatus.CANCELLED:
            return 'cancelled'
        if self.status == OrderStatus.FILLED:
            return 'executed'
        return 'pending'

    def fill(self, quantity: int) -> None:
        self.remaining_quantity -= quantity
        if self.remaining_quantity == 0:
            self.status = OrderStatus.FILLED
        else:
            self.status = OrderStatus.PARTIALLY_FILLED
        self.touch()

    def to_client_dict(self, symbol: str) -> Dict[str, Any]:
        return {
            'id': self.id,
            'side': self.side.value.lower(),
            'stock_symbol': symbol,
            'quantity': self.quantity,
            'limit_price': cents_to_decimal(self.limit_price_cents),
            'fees': cents_to_decimal(self.fee_cents),
            'status': self.client_status,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class StockTrade(StorageRecord):
    stock_id: str
    buy_order_id: str
    sell_order_id: str
    buyer_id: str
    seller_id: str
    quantity: int
    price_cents: int


class StockCatalog(EventPublisherMixin):
    """Director-side management of listed stocks"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.event_dispatcher = event_dispatcher
        self.stocks_table = "stocks"
        self.holdings_table = "stock_holdings"

    def save_stock(self, stock: Stock) -> None:
        self.storage.save(self.stocks_table, stock.id, stock.to_dict())

    def get_stock(self, stock_id: str) -> Optional[Stock]:
        data = self.storage.load(self.stocks_table, stock_id)
        if not data:
            return None
        return Stock.from_dict(data)

    def find_by_symbol(self, symbol: str) -> Optional[Stock]:
        matches = self.storage.find(self.stocks_table, {'symbol': symbol.strip().upper()})
        if not matches:
            return None
        return Stock.from_dict(matches[0])

    def _require_stock(self, stock_id: str) -> Stock:
        if not stock_id:
            raise ValidationError("Stock id manquant")
        stock = self.get_stock(stock_id)
        if not stock:
            raise NotFoundError("Action introuvable")
        return stock

    def owners_count(self, stock_id: str) -> int:
        """Number of clients holding a positive quantity"""
        return sum(
            1 for data in self.storage.find(self.holdings_table, {'stock_id': stock_id})
            if data.get('quantity', 0) > 0
        )

    def director_view(self, stock: Stock) -> Dict[str, Any]:
        return {
            'id': stock.id,
            'symbol': stock.symbol,
            'name': stock.name,
            'current_price': stock.current_price,
            'is_available': stock.is_available,
            'created_at': stock.created_at,
            'last_modified': stock.updated_at,
            'owned_by_clients': self.owners_count(stock.id),
        }

    def create_stock(self, symbol: str, name: str, current_price: NumberLike,
                     is_available: bool = True,
                     director_id: Optional[str] = None) -> Dict[str, Any]:
        """
        List a new stock

        Args:
            symbol: Ticker, upper-cased, 1 to 10 characters, unique
            name: At least 3 characters
            current_price: Initial price in euros

        Returns:
            Director view of the stock
        """
        symbol = (symbol or '').strip().upper()
        name = (name or '').strip()
        if not symbol or len(symbol) > MAX_SYMBOL_LENGTH:
            raise ValidationError("Symbole invalide")
        if len(name) < MIN_NAME_LENGTH:
            raise ValidationError("Nom invalide")
        price = parse_amount(current_price, "Prix initial invalide")
        if price <= 0:
            raise ValidationError("Prix initial invalide")

        cents = to_cents(price)
        now = datetime.now(timezone.utc)
        stock = Stock(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            symbol=symbol,
            name=name,
            is_available=bool(is_available),
            initial_price_cents=cents,
            last_price_cents=cents
        )

        with self.storage.atomic():
            if self.find_by_symbol(symbol):
                raise ValidationError("Ce symbole existe déjà")
            self.save_stock(stock)
            self.audit_trail.log_event(
                AuditEventType.STOCK_CREATED, 'stock', stock.id,
                {'symbol': symbol, 'price_cents': cents}, director_id
            )

        return self.director_view(stock)

    def delete_stock(self, stock_id: str, director_id: Optional[str] = None) -> None:
        with self.storage.atomic():
            stock = self._require_stock(stock_id)
            if self.owners_count(stock.id) > 0:
                raise ValidationError("Impossible de supprimer : des clients possèdent cette action")
            self.storage.delete(self.stocks_table, stock.id)
            self.audit_trail.log_event(
                AuditEventType.STOCK_DELETED, 'stock', stock.id,
                {'symbol': stock.symbol}, director_id
            )

    def toggle_availability(self, stock_id: str, is_available: bool,
                            director_id: Optional[str] = None) -> Dict[str, Any]:
        with self.storage.atomic():
            stock = self._require_stock(stock_id)
            stock.is_available = bool(is_available)
            stock.touch()
            self.save_stock(stock)
            self.audit_trail.log_event(
                AuditEventType.STOCK_AVAILABILITY_CHANGED, 'stock', stock.id,
                {'is_available': stock.is_available}, director_id
            )
        return self.director_view(stock)

    def list_director_stocks(self) -> List[Dict[str, Any]]:
        """Every stock with its owner count, newest first"""
        stocks = [Stock.from_dict(data) for data in self.storage.load_all(self.stocks_table)]
        stocks.sort(key=lambda s: s.created_at)
        stocks.reverse()
        return [self.director_view(stock) for stock in stocks]

    def list_client_stocks(self) -> List[Dict[str, Any]]:
        """Stocks open to buyers, by symbol"""
        stocks = [
            Stock.from_dict(data)
            for data in self.storage.find(self.stocks_table, {'is_available': True})
        ]
        stocks.sort(key=lambda s: s.symbol)
        return [
            {
                'symbol': stock.symbol,
                'name': stock.name,
                'last_price': stock.current_price,
                'currency': Currency.EUR.code,
            }
            for stock in stocks
        ]


class OrderBook(EventPublisherMixin):
    """Client wallets, holdings and limit orders with continuous matching"""

    def __init__(
        self,
        storage: StorageInterface,
        catalog: StockCatalog,
        accounts: AccountManager,
        audit_trail: AuditTrail,
        ledger: Optional[TransactionLedger] = None,
        config: Optional[AvenirConfig] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.catalog = catalog
        self.accounts = accounts
        self.audit_trail = audit_trail
        self.ledger = ledger or accounts.ledger
        self.config = config or get_config()
        self.event_dispatcher = event_dispatcher
        self.orders_table = "stock_orders"
        self.trades_table = "stock_trades"
        self.wallets_table = "investment_wallets"
        self.holdings_table = catalog.holdings_table

    @property
    def fee_cents(self) -> int:
        return self.config.order_fee_cents

    # Wallets and holdings

    def get_wallet(self, user_id: str) -> InvestmentWallet:
        """Wallet of a user, created empty on first use"""
        data = self.storage.load(self.wallets_table, user_id)
        if data:
            return InvestmentWallet.from_dict(data)
        now = datetime.now(timezone.utc)
        wallet = InvestmentWallet(id=user_id, created_at=now, updated_at=now, user_id=user_id)
        self._save_wallet(wallet)
        return wallet

    def _save_wallet(self, wallet: InvestmentWallet) -> None:
        self.storage.save(self.wallets_table, wallet.id, wallet.to_dict())

    @staticmethod
    def _holding_id(user_id: str, stock_id: str) -> str:
        return f"{user_id}:{stock_id}"

    def get_holding(self, user_id: str, stock_id: str) -> StockHolding:
        holding_id = self._holding_id(user_id, stock_id)
        data = self.storage.load(self.holdings_table, holding_id)
        if data:
            return StockHolding.from_dict(data)
        now = datetime.now(timezone.utc)
        return StockHolding(id=holding_id, created_at=now, updated_at=now,
                            user_id=user_id, stock_id=stock_id)

    def _save_holding(self, holding: StockHolding) -> None:
        holding.touch()
        self.storage.save(self.holdings_table, holding.id, holding.to_dict())

    def list_holdings(self, user_id: str) -> List[StockHolding]:
        holdings = [
            StockHolding.from_dict(data)
            for data in self.storage.find(self.holdings_table, {'user_id': user_id})
        ]
        return [h for h in holdings if h.quantity > 0]

    def fund_wallet(self, user_id: str, account_id: str, amount: NumberLike) -> InvestmentWallet:
        """Move money from one of the user's bank accounts to the wallet"""
        amount = as_money(amount)
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")

        with self.storage.atomic():
            account = self.accounts.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Account is not active")

            account.debit(amount)
            transaction = self.ledger.record(
                TransactionType.WALLET_FUNDING, amount, from_account_id=account.id,
                description="Investment wallet funding", initiated_by=user_id
            )
            self.accounts.save_account(account)

            wallet = self.get_wallet(user_id)
            wallet.cash_cents += amount.to_cents()
            wallet.touch()
            self._save_wallet(wallet)

            self.audit_trail.log_event(
                AuditEventType.WALLET_FUNDED, 'wallet', wallet.id,
                {'amount': amount.amount, 'account_id': account.id,
                 'transaction_id': transaction.id},
                user_id
            )

        return wallet

    def withdraw_to_account(self, user_id: str, account_id: str,
                            amount: NumberLike) -> InvestmentWallet:
        """Move uninvested wallet cash back to a bank account"""
        amount = as_money(amount)
        if not amount.is_positive():
            raise ValidationError("Amount must be positive")

        with self.storage.atomic():
            account = self.accounts.get_owned_account(account_id, user_id)
            if not account.is_active:
                raise ValidationError("Account is not active")

            wallet = self.get_wallet(user_id)
            cents = amount.to_cents()
            if wallet.cash_cents < cents:
                raise InsufficientFundsError(
                    f"Solde du portefeuille insuffisant. Disponible: {format_cents(wallet.cash_cents)}."
                )
            wallet.cash_cents -= cents
            wallet.touch()
            self._save_wallet(wallet)

            account.credit(amount)
            transaction = self.ledger.record(
                TransactionType.WALLET_WITHDRAWAL, amount, to_account_id=account.id,
                description="Investment wallet withdrawal", initiated_by=user_id
            )
            self.accounts.save_account(account)

            self.audit_trail.log_event(
                AuditEventType.WALLET_WITHDRAWN, 'wallet', wallet.id,
                {'amount': amount.amount, 'account_id': account.id,
                 'transaction_id': transaction.id},
                user_id
            )

        return wallet

    # Orders

    def _save_order(self, order: StockOrder) -> None:
        self.storage.save(self.orders_table, order.id, order.to_dict())

    def get_order(self, order_id: str) -> Optional[StockOrder]:
        data = self.storage.load(self.orders_table, order_id)
        if not data:
            return None
        return StockOrder.from_dict(data)

    def _validate_order_input(self, stock_symbol: str, quantity: int,
                              limit_price: NumberLike) -> tuple:
        symbol = (stock_symbol or '').strip().upper()
        if not symbol:
            raise ValidationError("Action manquante")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationError("Quantité invalide")
        price = parse_amount(limit_price, "Prix limite invalide")
        if price <= 0:
            raise ValidationError("Prix limite invalide")
        if quantity > self.config.max_order_quantity:
            raise ValidationError("Quantité trop élevée")
        if price > cents_to_decimal(self.config.max_limit_price_cents):
            raise ValidationError("Prix limite trop élevé")

        limit_price_cents = to_cents(price)
        if limit_price_cents <= 0:
            raise ValidationError("Prix limite invalide")
        if limit_price_cents > self.config.max_limit_price_cents:
            raise ValidationError("Prix limite trop élevé")
        return symbol, limit_price_cents

    def place_order(self, user_id: str, stock_symbol: str, side: Union[OrderSide, str],
                    quantity: int, limit_price: NumberLike) -> Dict[str, Any]:
        """
        Place a limit order and match it against the book

        Args:
            user_id: Client placing the order
            stock_symbol: Ticker of a listed stock
            side: OrderSide or 'buy' / 'sell'
            quantity: Positive whole number of shares
            limit_price: Limit in euros

        Returns:
            Client view of the order after matching
        """
        symbol, limit_price_cents = self._validate_order_input(stock_symbol, quantity, limit_price)
        side = OrderSide.parse(side)
        fee_cents = self.fee_cents

        with self.storage.atomic():
            stock = self.catalog.find_by_symbol(symbol)
            if not stock:
                raise NotFoundError("Action introuvable")
            if side == OrderSide.BUY and not stock.is_available:
                raise ForbiddenError("Cette action n'est pas disponible à l'achat")

            wallet = self.get_wallet(user_id)
            holding = self.get_holding(user_id, stock.id)

            if side == OrderSide.SELL and quantity * limit_price_cents < fee_cents:
                raise ValidationError("Ordre trop petit pour couvrir les frais")

            now = datetime.now(timezone.utc)
            order = StockOrder(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                stock_id=stock.id,
                side=side,
                quantity=quantity,
                remaining_quantity=quantity,
                limit_price_cents=limit_price_cents,
                fee_cents=fee_cents
            )

            if side == OrderSide.BUY:
                reserved = quantity * limit_price_cents
                required = reserved + fee_cents
                if wallet.cash_cents < required:
                    raise InsufficientFundsError(
                        f"Solde insuffisant pour placer cet ordre. "
                        f"Requis: {format_cents(required)} (frais inclus), "
                        f"disponible: {format_cents(wallet.cash_cents)}."
                    )
                wallet.cash_cents -= required
                wallet.touch()
                self._save_wallet(wallet)
                order.reserved_cash_cents = reserved
                order.fee_charged = True
            else:
                if holding.quantity < quantity:
                    raise ValidationError("Vous ne possédez pas assez d'actions pour vendre")
                holding.quantity -= quantity
                self._save_holding(holding)
                order.reserved_quantity = quantity

            self._save_order(order)
            self.audit_trail.log_event(
                AuditEventType.ORDER_PLACED, 'order', order.id,
                {'symbol': symbol, 'side': side.value, 'quantity': quantity,
                 'limit_price_cents': limit_price_cents},
                user_id
            )

            trades = self._match(order, stock)

        # Handlers reacting to the order log under the order id
        with correlation_scope(order.id):
            log_action(
                logger, "info", "Stock order placed", user_id=user_id, action="place_order",
                resource=f"order:{order.id}",
                extra={'symbol': symbol, 'side': side.value, 'trades': len(trades)}
            )
            self.publish_event(DomainEvent.ORDER_PLACED, 'order', order.id,
                               {'symbol': symbol, 'side': side.value, 'status': order.status.value})
            for trade in trades:
                self.publish_event(DomainEvent.TRADE_EXECUTED, 'trade', trade.id,
                                   {'symbol': symbol, 'quantity': trade.quantity,
                                    'price_cents': trade.price_cents})

        return order.to_client_dict(symbol)

    def _best_counter_order(self, order: StockOrder) -> Optional[StockOrder]:
        candidates = []
        for data in self.storage.find(self.orders_table, {'stock_id': order.stock_id}):
            other = StockOrder.from_dict(data)
            if other.id == order.id or not other.is_open or other.side == order.side:
                continue
            if order.is_buy and other.limit_price_cents > order.limit_price_cents:
                continue
            if not order.is_buy and other.limit_price_cents < order.limit_price_cents:
                continue
            candidates.append(other)

        if not candidates:
            return None
        candidates.sort(key=lambda o: o.created_at)
        if order.is_buy:
            return min(candidates, key=lambda o: o.limit_price_cents)
        return max(candidates, key=lambda o: o.limit_price_cents)

    def _match(self, order: StockOrder, stock: Stock) -> List[StockTrade]:
        trades = []
        while order.remaining_quantity > 0:
            counterparty = self._best_counter_order(order)
            if not counterparty:
                break

            buy_order, sell_order = (order, counterparty) if order.is_buy else (counterparty, order)
            qty = min(order.remaining_quantity, counterparty.remaining_quantity)
            # Half up on the integer midpoint
            trade_price_cents = (buy_order.limit_price_cents + sell_order.limit_price_cents + 1) // 2

            now = datetime.now(timezone.utc)
            trade = StockTrade(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                stock_id=stock.id,
                buy_order_id=buy_order.id,
                sell_order_id=sell_order.id,
                buyer_id=buy_order.user_id,
                seller_id=sell_order.user_id,
                quantity=qty,
                price_cents=trade_price_cents
            )
            self.storage.save(self.trades_table, trade.id, trade.to_dict())

            buyer_holding = self.get_holding(buy_order.user_id, stock.id)
            buyer_holding.quantity += qty
            self._save_holding(buyer_holding)

            reserved_release = qty * buy_order.limit_price_cents
            proceeds = qty * trade_price_cents
            buyer_wallet = self.get_wallet(buy_order.user_id)
            buyer_wallet.cash_cents += reserved_release - proceeds
            buyer_wallet.touch()
            self._save_wallet(buyer_wallet)

            buy_order.reserved_cash_cents -= reserved_release
            buy_order.fill(qty)
            sell_order.reserved_quantity -= qty
            sell_order.fill(qty)

            seller_wallet = self.get_wallet(sell_order.user_id)
            seller_wallet.cash_cents += proceeds
            if not sell_order.fee_charged:
                seller_wallet.cash_cents -= sell_order.fee_cents
                sell_order.fee_charged = True
            seller_wallet.touch()
            self._save_wallet(seller_wallet)

            self._save_order(buy_order)
            self._save_order(sell_order)

            stock.last_price_cents = trade_price_cents
            stock.touch()
            self.catalog.save_stock(stock)

            self.audit_trail.log_event(
                AuditEventType.TRADE_EXECUTED, 'trade', trade.id,
                {'stock_id': stock.id, 'quantity': qty, 'price_cents': trade_price_cents,
                 'buy_order_id': buy_order.id, 'sell_order_id': sell_order.id}
            )
            trades.append(trade)

        return trades

    def cancel_order(self, order_id: str, user_id: str) -> Dict[str, Any]:
        """Cancel an open order, releasing its reserved cash or shares"""
        with self.storage.atomic():
            order = self.get_order(order_id)
            if not order or order.user_id != user_id:
                raise NotFoundError("Ordre introuvable")
            if not order.is_open:
                raise ValidationError("Cet ordre ne peut plus être annulé")

            if order.is_buy:
                wallet = self.get_wallet(user_id)
                wallet.cash_cents += order.reserved_cash_cents
                wallet.touch()
                self._save_wallet(wallet)
                order.reserved_cash_cents = 0
            else:
                holding = self.get_holding(user_id, order.stock_id)
                holding.quantity += order.reserved_quantity
                self._save_holding(holding)
                order.reserved_quantity = 0

            order.status = OrderStatus.CANCELLED
            order.touch()
            self._save_order(order)

            self.audit_trail.log_event(
                AuditEventType.ORDER_CANCELLED, 'order', order.id,
                {'remaining_quantity': order.remaining_quantity}, user_id
            )

        stock = self.catalog.get_stock(order.stock_id)
        return order.to_client_dict(stock.symbol if stock else 'UNK')

    def list_client_orders(self, user_id: str) -> List[Dict[str, Any]]:
        """Orders of a client, newest first"""
        orders = [
            StockOrder.from_dict(data)
            for data in self.storage.find(self.orders_table, {'user_id': user_id})
        ]
        orders.sort(key=lambda o: o.created_at)
        orders.reverse()

        symbols: Dict[str, str] = {}
        for order in orders:
            if order.stock_id not in symbols:
                stock = self.catalog.get_stock(order.stock_id)
                symbols[order.stock_id] = stock.symbol if stock else 'UNK'
        return [order.to_client_dict(symbols[order.stock_id]) for order in orders]

    def list_trades(self, stock_id: str) -> List[StockTrade]:
        trades = [
            StockTrade.from_dict(data)
            for data in self.storage.find(self.trades_table, {'stock_id': stock_id})
        ]
        trades.sort(key=lambda t: t.created_at)
        return trades
