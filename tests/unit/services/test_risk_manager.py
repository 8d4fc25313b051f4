"""
Unit tests for RiskManager (entry gate and outcome tracking).
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import make_position, make_signal

from trading_bot.config.settings import RiskSettings
from trading_bot.domain.errors import RiskValidationError
from trading_bot.domain.models import PositionSide, TradeRecord
from trading_bot.services.risk_manager import RiskManager

pytestmark = pytest.mark.unit

BALANCE = Decimal("1000")


def trade(pnl, symbol: str = "BTCUSDT") -> TradeRecord:
    return TradeRecord(
        position_id="pos-1",
        symbol=symbol,
        side=PositionSide.LONG,
        entry_price=Decimal("100"),
        exit_price=Decimal("99"),
        quantity=Decimal("1"),
        realized_pnl=Decimal(pnl) if pnl is not None else None,
    )


@pytest.fixture
def risk_manager(error_handler, registry) -> RiskManager:
    return RiskManager(error_handler=error_handler, registry=registry)


def build(error_handler, **settings) -> RiskManager:
    return RiskManager(RiskSettings(**settings), error_handler=error_handler)


class TestAllowedTrade:
    @pytest.mark.asyncio
    async def test_base_size(self, risk_manager):
        decision = await risk_manager.can_trade(make_signal(), BALANCE, [])

        assert decision.allowed is True
        assert decision.adjusted_position_size == Decimal("10")
        assert decision.risk_details["streak_multiplier"] == Decimal("1")
        assert decision.risk_details["open_positions"] == 0

    @pytest.mark.asyncio
    async def test_size_clamped_to_bounds(self, risk_manager):
        big = await risk_manager.can_trade(make_signal(), Decimal("1000000"), [])
        small = await risk_manager.can_trade(make_signal(), Decimal("100"), [])

        assert big.adjusted_position_size == Decimal("100")
        assert small.adjusted_position_size == Decimal("5")

    @pytest.mark.asyncio
    async def test_size_capped_by_leverage(self, error_handler):
        manager = build(error_handler, concurrent_risk={"enabled": False})

        decision = await manager.can_trade(make_signal(), Decimal("2"), [])

        assert decision.allowed is True
        assert decision.adjusted_position_size == Decimal("4")

    @pytest.mark.asyncio
    async def test_leverage_multiplier_setting(self, error_handler):
        manager = build(
            error_handler,
            concurrent_risk={"enabled": False},
            position_sizing={"max_leverage_multiplier": "1"},
        )

        decision = await manager.can_trade(make_signal(), Decimal("3"), [])

        assert decision.adjusted_position_size == Decimal("3")


class TestSignalValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("signal", "message"),
        [
            (None, "Signal is required"),
            (make_signal(price="0"), "Invalid signal price"),
            (make_signal(price="NaN"), "Invalid signal price"),
            (make_signal(confidence="150"), "Invalid signal confidence"),
            (make_signal(confidence="-1"), "Invalid signal confidence"),
        ],
    )
    async def test_invalid_signal_raises(self, risk_manager, registry, signal, message):
        with pytest.raises(RiskValidationError, match=message):
            await risk_manager.can_trade(signal, BALANCE, [])

        stats = registry.get_stats_by_code("RISK_VALIDATION_ERROR")
        assert stats[0].count == 1
        assert stats[0].recovered_count == 0


class TestBalance:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("balance", [Decimal("0"), Decimal("-5"), Decimal("NaN"), None])
    async def test_invalid_balance_denied(self, risk_manager, registry, balance):
        decision = await risk_manager.can_trade(make_signal(), balance, [])

        assert decision.allowed is False
        assert decision.reason == "Account balance validation failed - trade denied for safety"
        stats = registry.get_stats_by_code("INSUFFICIENT_ACCOUNT_BALANCE_ERROR")
        assert stats[0].recovered_count == 1


class TestDailyLimits:
    @pytest.mark.asyncio
    async def test_daily_loss_limit(self, risk_manager):
        risk_manager.record_trade_result(trade("-100"))

        decision = await risk_manager.can_trade(make_signal(), BALANCE, [])

        assert decision.allowed is False
        assert decision.reason.startswith("Daily loss limit exceeded: -10.00%")
        assert decision.risk_details["daily_pnl_percent"] == Decimal("-10")

    @pytest.mark.asyncio
    async def test_loss_just_inside_limit(self, risk_manager):
        risk_manager.record_trade_result(trade("-49"))
        decision = await risk_manager.can_trade(make_signal(), BALANCE, [])
        assert decision.allowed is True

    @pytest.mark.asyncio
    async def test_daily_profit_target(self, error_handler):
        manager = build(error_handler, daily_limits={"max_daily_profit_pct": "3"})
        manager.record_trade_result(trade("50"))

        decision = await manager.can_trade(make_signal(), BALANCE, [])

        assert decision.allowed is False
        assert decision.reason.startswith("Daily profit target reached")

    @pytest.mark.asyncio
    async def test_new_day_resets_pnl(self, risk_manager):
        risk_manager.record_trade_result(trade("-100"))
        risk_manager._trading_day -= timedelta(days=1)

        decision = await risk_manager.can_trade(make_signal(), BALANCE, [])

        assert decision.allowed is True
        assert risk_manager.daily_pnl == Decimal("0")
        assert risk_manager.consecutive_losses == 1


class TestLossStreak:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("losses", "multiplier", "size"),
        [
            (1, Decimal("1"), Decimal("10")),
            (2, Decimal("0.75"), Decimal("7.5")),
            (3, Decimal("0.5"), Decimal("5")),
            (4, Decimal("0.25"), Decimal("5")),
        ],
    )
    async def test_size_reduction(self, risk_manager, losses, multiplier, size):
        for _ in range(losses):
            risk_manager.record_trade_result(trade("-1"))

        decision = await risk_manager.can_trade(make_signal(), BALANCE, [])

        assert risk_manager.get_streak_multiplier() == multiplier
        assert decision.adjusted_position_size == size

    @pytest.mark.asyncio
    async def test_stop_after_losses(self, error_handler):
        manager = build(error_handler, loss_streak={"stop_after_losses": 2})
        manager.record_trade_result(trade("-1"))
        manager.record_trade_result(trade("-1"))

        decision = await manager.can_trade(make_signal(), BALANCE, [])

        assert decision.allowed is False
        assert decision.reason == "Consecutive loss limit exceeded: 2 / 2"

    def test_win_resets_streak(self, risk_manager):
        risk_manager.record_trade_result(trade("-1"))
        risk_manager.record_trade_result(trade("-1"))
        risk_manager.record_trade_result(trade("0"))

        assert risk_manager.consecutive_losses == 0
        assert risk_manager.last_loss_time is not None


class TestConcurrentRisk:
    @pytest.mark.asyncio
    async def test_max_positions(self, risk_manager):
        positions = [make_position(quantity="0.01", position_id=f"p{i}") for i in range(3)]

        decision = await risk_manager.can_trade(make_signal(), BALANCE, positions)

        assert decision.allowed is False
        assert decision.reason == "Max concurrent positions reached: 3 / 3"

    @pytest.mark.asyncio
    async def test_exposure_limit(self, risk_manager):
        decision = await risk_manager.can_trade(make_signal(), BALANCE, [make_position(quantity="1")])

        assert decision.allowed is False
        assert decision.reason.startswith("Total exposure limit would be exceeded: 11.00%")

    @pytest.mark.asyncio
    async def test_small_exposure_allowed(self, risk_manager):
        decision = await risk_manager.can_trade(make_signal(), BALANCE, [make_position(quantity="0.1")])

        assert decision.allowed is True
        assert decision.risk_details["total_exposure_percent"] == Decimal("2")
        assert risk_manager.total_exposure == Decimal("10")

    @pytest.mark.asyncio
    async def test_exposure_counts_clamped_size(self, risk_manager):
        # 1% of 100 is clamped up to the 5 USDT minimum, i.e. 5% of balance
        decision = await risk_manager.can_trade(make_signal(), Decimal("100"), [make_position(quantity="0.035")])

        assert decision.allowed is False
        assert decision.reason == "Total exposure limit would be exceeded: 8.50% / 5.0%"
        assert decision.risk_details["total_exposure_percent"] == Decimal("8.5")
        assert risk_manager.total_exposure == Decimal("3.5")

    @pytest.mark.asyncio
    async def test_exposure_at_limit_allowed(self, risk_manager):
        decision = await risk_manager.can_trade(make_signal(), BALANCE, [make_position(quantity="0.4")])

        assert decision.allowed is True
        assert decision.risk_details["total_exposure_percent"] == Decimal("5")

    @pytest.mark.asyncio
    async def test_disabled(self, error_handler):
        manager = build(error_handler, concurrent_risk={"enabled": False})
        positions = [make_position(quantity="5", position_id=f"p{i}") for i in range(5)]

        decision = await manager.can_trade(make_signal(), BALANCE, positions)

        assert decision.allowed is True


class TestRecordTradeResult:
    @pytest.mark.parametrize("bad", [None, trade(None), trade("NaN"), trade("Infinity")])
    def test_never_raises_and_skips_corrupt(self, risk_manager, bad):
        risk_manager.record_trade_result(trade("-1"))

        risk_manager.record_trade_result(bad)

        assert risk_manager.daily_pnl == Decimal("-1")
        assert risk_manager.consecutive_losses == 1

    def test_status(self, risk_manager):
        risk_manager.set_account_balance(BALANCE)
        risk_manager.record_trade_result(trade("-20"))

        status = risk_manager.get_risk_status()

        assert status["daily_pnl"] == Decimal("-20")
        assert status["daily_pnl_percent"] == Decimal("-2")
        assert status["consecutive_losses"] == 1
        assert status["risk_healthy"] is True

    def test_invalid_balance_ignored(self, risk_manager):
        risk_manager.set_account_balance(BALANCE)
        risk_manager.set_account_balance(Decimal("NaN"))
        assert risk_manager.account_balance == BALANCE
