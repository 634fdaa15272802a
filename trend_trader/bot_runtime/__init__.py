from .logging import setup_logger
from .loop import bootstrap_dependencies, execute_cycle, load_runtime_config, run_trading_loop
from .server import TradingService, create_app, serve_http
from .settings import RUN_MODE_LOOP, RUN_MODE_ONCE, RUN_MODE_SERVE, AppSettings

__all__ = [
    "AppSettings",
    "RUN_MODE_LOOP",
    "RUN_MODE_ONCE",
    "RUN_MODE_SERVE",
    "TradingService",
    "bootstrap_dependencies",
    "create_app",
    "execute_cycle",
    "load_runtime_config",
    "run_trading_loop",
    "serve_http",
    "setup_logger",
]
