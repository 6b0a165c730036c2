"""
Swap coordination for htlcswap.

Orders, the phase state machine, confirmation tracking, persistence and the
monitor that drives both legs to a terminal phase.
"""

from .orders import Order
from .monitor import OrderMonitor, MonitorConfig, Subscription
from .executor import SwapExecutor, SwapConfig

__all__ = ["Order", "OrderMonitor", "MonitorConfig", "Subscription", "SwapExecutor", "SwapConfig"]
