"""
Grand Exchange finance utilities.

This module provides utilities for GE price calculations including:
- GE tax on sale proceeds (2%, rounded down, items above 1,000 GP only)
- Net sell price and profit after tax
- Profit percentage after tax
"""

from __future__ import annotations

import math

GE_TAX_RATE = 0.02
GE_TAX_THRESHOLD_GP = 1000


def calculate_ge_tax(price: float) -> int:
    """
    Compute the GE tax levied on a sale at ``price``.

    Args:
        price: Sale price in GP

    Returns:
        int: Tax in GP. Zero at or below the threshold, otherwise
             ``floor(price * GE_TAX_RATE)``.

    Example:
        >>> calculate_ge_tax(900)
        0
        >>> calculate_ge_tax(100_000)
        2000
    """
    if price <= GE_TAX_THRESHOLD_GP:
        return 0
    return int(math.floor(price * GE_TAX_RATE))


def calculate_net_sell_price(sell_price: float) -> float:
    return sell_price - calculate_ge_tax(sell_price)


def calculate_profit_after_tax(buy_price: float, sell_price: float) -> float:
    """Profit of buying at ``buy_price`` and selling at ``sell_price`` after GE tax."""
    return calculate_net_sell_price(sell_price) - buy_price


def calculate_profit_percentage_after_tax(buy_price: float, sell_price: float) -> float:
    if buy_price <= 0:
        return 0.0
    return calculate_profit_after_tax(buy_price, sell_price) / buy_price * 100.0


def is_tax_free(price: float) -> bool:
    return price <= GE_TAX_THRESHOLD_GP
