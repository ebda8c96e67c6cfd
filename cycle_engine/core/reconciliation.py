"""Position reconciliation.

Makes local open positions mirror the broker. The broker always wins:
mismatches overwrite local state, unknown broker positions are created and
local positions the broker no longer holds are closed.
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

import structlog

from cycle_engine.core.exceptions import ReconciliationConflict
from cycle_engine.core.models import (
    ActivityType,
    BrokerPosition,
    OrderSide,
    OrderStatus,
    Position,
)
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.exchange.gateway import BrokerGateway, GatewayFactory

logger = structlog.get_logger(__name__)

CLOSED_BY_RECONCILIATION = "reconciliation"

# Price noise tolerated before an entry price counts as a conflict
ENTRY_PRICE_TOLERANCE = Decimal("0.01")


def verify_position(local: Position, broker: BrokerPosition):
    """
    Compare a local open position with the broker's.

    Raises:
        ReconciliationConflict: Quantity, side or entry price disagree
    """
    if (
        local.quantity != abs(broker.qty)
        or local.side != broker.side
        or abs(local.entry_price - broker.avg_entry_price) > ENTRY_PRICE_TOLERANCE
    ):
        raise ReconciliationConflict(
            local.user_id,
            local.symbol,
            {"quantity": str(local.quantity), "entry_price": str(local.entry_price),
             "side": local.side.value},
            {"quantity": str(broker.qty), "entry_price": str(broker.avg_entry_price),
             "side": broker.side.value},
        )


class PortfolioReconciler:
    """
    Syncs broker positions into the local position table.

    Idempotent: running it twice against the same broker state leaves
    exactly one open position per (user, symbol).
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

    async def sync_positions_to_database(
        self,
        user_id: str,
        gateway: Optional[BrokerGateway] = None,
    ) -> Dict[str, int]:
        """
        Reconcile one user's positions.

        Returns:
            Counts of created, updated, conflicts and closed positions

        Raises:
            AccountNotConnected: The user has no connected broker account
            GatewayError: Positions could not be fetched
        """
        async with self.gateway_factory.session(user_id, gateway) as gw:
            broker_positions = await gw.get_positions()

        summary = {"created": 0, "updated": 0, "conflicts": 0, "closed": 0}
        local_open = {p.symbol: p for p in await self.database.get_open_positions(user_id)}

        for broker in broker_positions:
            local = local_open.pop(broker.symbol, None)
            if local is None:
                position = Position.from_broker(user_id, broker)
                await self._attach_bracket_levels(position)
                await self.database.save_position(position)
                summary["created"] += 1
                logger.info(
                    "reconciliation.position_created",
                    user_id=user_id,
                    symbol=broker.symbol,
                    quantity=str(broker.qty),
                )
                continue

            try:
                verify_position(local, broker)
            except ReconciliationConflict as conflict:
                summary["conflicts"] += 1
                logger.warning(
                    "reconciliation.conflict_resolved",
                    user_id=user_id,
                    symbol=conflict.symbol,
                    local=conflict.local,
                    broker=conflict.broker,
                )
                await self.activity.create_activity_log(
                    user_id,
                    ActivityType.SYSTEM,
                    "Position corrected from broker",
                    details={"local": conflict.local, "broker": conflict.broker},
                    symbol=conflict.symbol,
                )
            local.apply_broker_position(broker)
            await self.database.save_position(local)
            summary["updated"] += 1

        for symbol, local in local_open.items():
            local.close(local.current_price, CLOSED_BY_RECONCILIATION)
            await self.database.save_position(local)
            summary["closed"] += 1
            logger.info(
                "reconciliation.position_closed",
                user_id=user_id,
                symbol=symbol,
                close_price=str(local.close_price),
            )

        await self._touch_account(user_id)
        logger.debug("reconciliation.completed", user_id=user_id, **summary)
        return summary

    async def _attach_bracket_levels(self, position: Position):
        """Copy stop/target from the latest filled buy order for the symbol."""
        orders = await self.database.get_orders(
            position.user_id,
            symbol=position.symbol,
            status=OrderStatus.FILLED.value,
            limit=10,
        )
        for order in orders:
            if order.side == OrderSide.BUY:
                position.stop_loss = order.stop_loss_price
                position.take_profit = order.take_profit_price
                return

    async def _touch_account(self, user_id: str):
        account = await self.database.get_broker_account(user_id)
        if account is not None:
            account.last_synced_at = datetime.utcnow()
            await self.database.save_broker_account(account)
