"""Order execution.

Submits orders through a user's broker gateway, mirrors them locally and
folds fills into positions. Order status is only ever copied from the
broker; nothing here advances it speculatively.
"""
from decimal import Decimal
from typing import List, Optional

import structlog

from cycle_engine.core.exceptions import GatewayError
from cycle_engine.core.models import (
    ActivityType,
    BracketOrderParams,
    BrokerOrder,
    Order,
    OrderSide,
    OrderType,
    Position,
    Severity,
    TimeInForce,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory

logger = structlog.get_logger(__name__)

CLOSED_BY_FILL = "order_fill"


class OrderExecutor:
    """
    Places orders for users and keeps the local order/position cache current.

    Submissions are never retried; a failed submission is logged as a
    critical activity and re-raised to the caller.

    Args:
        database: Storage for orders, positions and signals
        gateway_factory: Builds a broker gateway for a user
        activity: Activity log writer
    """

    def __init__(
        self,
        database,
        gateway_factory: GatewayFactory,
        activity: Optional[ActivityLogger] = None,
    ):
        self.database = database
        self.gateway_factory = gateway_factory
        self.activity = activity or ActivityLogger(database)

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_bracket_order(
        self,
        user_id: str,
        params: BracketOrderParams,
        signal_id: Optional[str] = None,
        gateway: Optional[BrokerGateway] = None,
    ) -> Order:
        """
        Submit an entry with take-profit and stop-loss legs.

        Args:
            user_id: Order owner
            params: Bracket parameters
            signal_id: Signal executed by this order; marked once submitted
            gateway: Gateway to reuse for this cycle

        Returns:
            The persisted local order

        Raises:
            GatewayError: Submission failed (not retried)
        """
        details = {
            "quantity": params.quantity,
            "side": params.side,
            "take_profit": params.take_profit,
            "stop_loss": params.stop_loss,
        }
        async with self.gateway_factory.session(user_id, gateway) as gw:
            try:
                broker_order = await gw.submit_bracket_order(params)
            except Exception as e:
                await self._log_submit_failure(user_id, params.symbol, e, details)
                raise

        order = Order.from_broker(user_id, broker_order, signal_id=signal_id)
        order.take_profit_price = order.take_profit_price or params.take_profit
        order.stop_loss_price = order.stop_loss_price or params.stop_loss
        await self._record_submission(order, signal_id, details)
        return order

    async def submit_market_order(
        self,
        user_id: str,
        symbol: str,
        quantity: Decimal,
        side: OrderSide,
        signal_id: Optional[str] = None,
        reason: Optional[str] = None,
        gateway: Optional[BrokerGateway] = None,
    ) -> Order:
        """Submit a simple market day order.

        Raises:
            GatewayError: Submission failed (not retried)
        """
        details = {"quantity": quantity, "side": side, "reason": reason}
        async with self.gateway_factory.session(user_id, gateway) as gw:
            try:
                broker_order = await gw.submit_order(
                    symbol, Decimal(str(quantity)), side, OrderType.MARKET, TimeInForce.DAY
                )
            except Exception as e:
                await self._log_submit_failure(user_id, symbol, e, details)
                raise

        order = Order.from_broker(user_id, broker_order, signal_id=signal_id)
        if reason:
            order.metadata["reason"] = reason
        await self._record_submission(order, signal_id, details)
        return order

    async def close_position(
        self,
        user_id: str,
        symbol: str,
        reason: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> Order:
        """
        Liquidate one position at market.

        The local position closes when the resulting sell order is synced.
        """
        symbol = symbol.upper()
        details = {"reason": reason}
        async with self.gateway_factory.session(user_id, gateway) as gw:
            try:
                broker_order = await gw.close_position(symbol)
            except Exception as e:
                await self._log_submit_failure(user_id, symbol, e, details)
                raise

        order = Order.from_broker(user_id, broker_order, metadata={"reason": reason})
        await self._record_submission(order, None, details)
        return order

    async def _record_submission(self, order: Order, signal_id: Optional[str], details: dict):
        await self.database.save_order(order)
        if signal_id:
            await self.database.mark_signal_executed(signal_id, order.broker_order_id)

        logger.info(
            "execution.order_submitted",
            user_id=order.user_id,
            order_id=order.id,
            broker_order_id=order.broker_order_id,
            symbol=order.symbol,
            side=order.side.value,
            quantity=str(order.quantity),
            status=order.status.value,
        )
        await self.activity.create_activity_log(
            order.user_id,
            ActivityType.TRADE,
            "order_submitted",
            Severity.SUCCESS,
            {**details, "order_id": order.broker_order_id, "status": order.status},
            symbol=order.symbol,
        )

    async def _log_submit_failure(self, user_id: str, symbol: str, error: Exception, details: dict):
        logger.error(
            "execution.order_failed",
            user_id=user_id,
            symbol=symbol,
            error=str(error),
            error_type=type(error).__name__,
        )
        await self.activity.log_error_safely(
            user_id,
            "order_failed",
            error,
            severity=Severity.CRITICAL,
            symbol=symbol,
            details=details,
        )

    # =========================================================================
    # Status
    # =========================================================================

    async def get_order_status(
        self,
        user_id: str,
        broker_order_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> BrokerOrder:
        """Broker view of an order, without touching the local cache."""
        async with self.gateway_factory.session(user_id, gateway) as gw:
            return await gw.get_order_status(broker_order_id)

    async def cancel_order(
        self,
        user_id: str,
        order_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> Order:
        """
        Request cancellation, then record whatever status the broker reports.

        Raises:
            ValueError: Unknown order
            GatewayError: The broker refused the request
        """
        order = await self._load_order(user_id, order_id)
        async with self.gateway_factory.session(user_id, gateway) as gw:
            await gw.cancel_order(order.broker_order_id)
            broker_order = await gw.get_order_status(order.broker_order_id)

        order.apply_broker_update(broker_order)
        await self.database.save_order(order)
        logger.info(
            "execution.order_cancel_requested",
            user_id=user_id,
            order_id=order.id,
            status=order.status.value,
        )
        await self.activity.create_activity_log(
            user_id,
            ActivityType.TRADE,
            "order_cancel_requested",
            details={"order_id": order.broker_order_id, "status": order.status},
            symbol=order.symbol,
        )
        return order

    async def _load_order(self, user_id: str, order_id: str) -> Order:
        order = await self.database.get_order(order_id)
        if order is None:
            order = await self.database.get_order_by_broker_id(user_id, order_id)
        if order is None or order.user_id != user_id:
            raise ValueError(f"Unknown order {order_id} for user {user_id}")
        return order

    # =========================================================================
    # Synchronisation
    # =========================================================================

    async def sync_order_status(
        self,
        user_id: str,
        order_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> Order:
        """
        Refresh one local order from the broker and apply its fill.

        A fill is folded into the (user, symbol) open position exactly once.

        Raises:
            ValueError: Unknown order
        """
        order = await self._load_order(user_id, order_id)

        if order.is_active:
            async with self.gateway_factory.session(user_id, gateway) as gw:
                broker_order = await gw.get_order_status(order.broker_order_id)
            previous = order.status
            if order.apply_broker_update(broker_order):
                logger.info(
                    "execution.order_status_changed",
                    user_id=user_id,
                    order_id=order.id,
                    symbol=order.symbol,
                    previous=previous.value,
                    current=order.status.value,
                    filled_qty=str(order.filled_qty),
                )

        if not order.is_active and order.filled_qty > 0 and not order.position_applied:
            if await self._apply_fill(order):
                order.position_applied = True

        await self.database.save_order(order)
        return order

    async def sync_open_orders(
        self,
        user_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> List[Order]:
        """Sync every non-terminal local order; failures are logged per order."""
        synced: List[Order] = []
        orders = await self.database.get_active_orders(user_id)
        if not orders:
            return synced

        async with self.gateway_factory.session(user_id, gateway) as gw:
            for order in orders:
                try:
                    synced.append(await self.sync_order_status(user_id, order.id, gw))
                except GatewayError as e:
                    logger.warning(
                        "execution.order_sync_failed",
                        user_id=user_id,
                        order_id=order.id,
                        error=str(e),
                    )
        return synced

    async def _apply_fill(self, order: Order) -> bool:
        """Fold a terminal order's fill into the open position."""
        price = order.filled_avg_price or order.limit_price or order.stop_price
        if price is None or price <= 0:
            logger.error(
                "execution.fill_without_price",
                user_id=order.user_id,
                order_id=order.id,
                symbol=order.symbol,
            )
            return False

        filled = order.filled_qty
        position = await self.database.get_open_position(order.user_id, order.symbol)

        if order.side == OrderSide.BUY:
            if position is None:
                position = Position(
                    user_id=order.user_id,
                    symbol=order.symbol,
                    quantity=filled,
                    entry_price=price,
                    stop_loss=order.stop_loss_price,
                    take_profit=order.take_profit_price,
                )
            else:
                total_cost = position.entry_price * position.quantity + price * filled
                position.quantity += filled
                position.entry_price = total_cost / position.quantity
                position.mark_price(price)
            await self.database.save_position(position)
            logger.info(
                "execution.position_increased",
                user_id=order.user_id,
                symbol=order.symbol,
                quantity=str(position.quantity),
                entry_price=str(position.entry_price),
            )
            return True

        if position is None:
            logger.warning(
                "execution.sell_without_position",
                user_id=order.user_id,
                symbol=order.symbol,
                order_id=order.id,
            )
            return True

        if filled >= position.quantity:
            position.close(price, order.metadata.get("reason") or CLOSED_BY_FILL)
            logger.info(
                "execution.position_closed",
                user_id=order.user_id,
                symbol=order.symbol,
                realized_pl=str(position.realized_pl),
            )
        else:
            position.quantity -= filled
            position.mark_price(price)
        await self.database.save_position(position)
        return True
