"""Pre-execution validation (technical validation, not risk management)."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from futures_engine.models.position import PositionSide

if TYPE_CHECKING:
    from futures_engine.models.order import OrderRequest

logger = structlog.get_logger()

VALID_ORDER_TYPES = {"market", "limit"}


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = []


class OrderValidator:
    """
    Pre-execution validation:
    - Side and order type known
    - Qty > 0 and finite
    - Leverage >= 1
    - Limit price present and positive for limit orders
    - SL < price for LONG, SL > price for SHORT
    - TP > price for LONG, TP < price for SHORT
    """

    def validate(self, request: OrderRequest) -> ValidationResult:
        """Run all validation checks. Returns ValidationResult."""
        errors: list[str] = []

        self._validate_side(request, errors)
        self._validate_order_type(request, errors)
        self._validate_qty(request, errors)
        self._validate_leverage(request, errors)
        self._validate_limit_price(request, errors)
        self._validate_sl_tp(request, errors)

        valid = len(errors) == 0
        if not valid:
            logger.warning("order_validation_failed", errors=errors, symbol=request.symbol)

        return ValidationResult(valid=valid, errors=errors)

    def _validate_side(self, request: OrderRequest, errors: list[str]) -> None:
        if not isinstance(request.side, PositionSide):
            errors.append(f"Invalid side '{request.side}'. Must be LONG or SHORT")

    def _validate_order_type(self, request: OrderRequest, errors: list[str]) -> None:
        if request.order_type not in VALID_ORDER_TYPES:
            errors.append(
                f"Invalid order_type '{request.order_type}'. Must be one of {VALID_ORDER_TYPES}"
            )

    def _validate_qty(self, request: OrderRequest, errors: list[str]) -> None:
        if not math.isfinite(request.qty) or request.qty <= 0:
            errors.append(f"qty must be > 0, got {request.qty}")

    def _validate_leverage(self, request: OrderRequest, errors: list[str]) -> None:
        if request.leverage < 1:
            errors.append(f"leverage must be >= 1, got {request.leverage}")

    def _validate_limit_price(self, request: OrderRequest, errors: list[str]) -> None:
        if request.order_type != "limit":
            return
        if request.price is None:
            errors.append("price is required for limit orders")
        elif request.price <= 0:
            errors.append(f"price must be > 0, got {request.price}")

    def _validate_sl_tp(self, request: OrderRequest, errors: list[str]) -> None:
        """Validate SL/TP logical correctness relative to the reference price."""
        if request.reduce_only or not request.price or request.price <= 0:
            return

        entry = request.price
        is_long = request.side is PositionSide.LONG

        if request.stop_loss is not None:
            sl = request.stop_loss
            if is_long and sl >= entry:
                errors.append(f"stop_loss ({sl}) must be < entry ({entry}) for long positions")
            elif not is_long and sl <= entry:
                errors.append(f"stop_loss ({sl}) must be > entry ({entry}) for short positions")

        if request.take_profit is not None:
            tp = request.take_profit
            if is_long and tp <= entry:
                errors.append(f"take_profit ({tp}) must be > entry ({entry}) for long positions")
            elif not is_long and tp >= entry:
                errors.append(f"take_profit ({tp}) must be < entry ({entry}) for short positions")
