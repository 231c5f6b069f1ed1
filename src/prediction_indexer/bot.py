"""Entry point for the prediction-market indexer.

Modes:
    all       crawler + listener + status API / push socket (default)
    crawler   historical crawler only
    listener  realtime listener + status API / push socket
"""

import argparse
import asyncio
import logging
import re
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from prediction_indexer.api.routes_ws import BroadcastHub
from prediction_indexer.config import IndexerConfig, load_indexer_config, load_yaml_config
from prediction_indexer.connection import ConnectionManager
from prediction_indexer.crawler import HistoricalCrawler
from prediction_indexer.errors import DatabaseUnavailableError, NodeExhaustedError
from prediction_indexer.listener import RealtimeListener
from prediction_indexer.models import C_RED, C_RESET, C_YELLOW

MODES = ("all", "crawler", "listener")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Prediction-market round indexer")
    parser.add_argument("--mode", default="all", choices=MODES, help="Services to run (default: all)")
    parser.add_argument("--config", default="config.yaml", help="YAML config path (default: config.yaml)")
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Root log level (default: from config, else INFO)",
    )
    return parser.parse_args(argv)


class _StripAnsiFormatter(logging.Formatter):
    """Strip ANSI escape codes for clean log files."""
    _ansi_re = re.compile(r'\033\[[0-9;]*m')

    def format(self, record):
        result = super().format(record)
        return self._ansi_re.sub('', result)


class _ColorFormatter(logging.Formatter):
    """Dim DEBUG lines on the console for visual hierarchy."""
    _DIM = "\033[2m"
    _RESET = "\033[0m"

    def format(self, record):
        result = super().format(record)
        if record.levelno <= logging.DEBUG:
            return f"{self._DIM}{result}{self._RESET}"
        return result


def _setup_logging(level_str: str, mode: str) -> None:
    level = getattr(logging, level_str.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s │ %(name)-16s │ %(message)s",
        datefmt="%H:%M:%S",
    )

    for h in logging.getLogger().handlers:
        if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler):
            h.setFormatter(_ColorFormatter(
                fmt="%(asctime)s │ %(name)-16s │ %(message)s",
                datefmt="%H:%M:%S",
            ))

    log_dir = Path("logs") / "indexer"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{mode}_{datetime.now():%Y-%m-%d_%H%M%S}.log"
    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(_StripAnsiFormatter(
        fmt="%(asctime)s │ %(name)-16s │ %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logging.getLogger().addHandler(fh)

    for noisy in ("httpx", "httpcore", "urllib3", "web3", "websockets", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


log = logging.getLogger("idx.bot")


async def _stats_loop(crawler: HistoricalCrawler, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        s = crawler.get_stats()
        log.info(
            "STATS │ rounds=%d bets=%d claims=%d errors=%d quarantined=%d main=%s branch=%s pending_failures=%d",
            s["rounds_processed"], s["bets_processed"], s["claims_processed"], s["errors"],
            s["quarantined"], "busy" if s["main_line_processing"] else "idle",
            "on" if s["branch_line_active"] else "off", s["failed_attempts"],
        )


async def _run(cfg: IndexerConfig, mode: str) -> None:
    """Initialize connections, then run the selected services until cancelled."""
    manager = ConnectionManager.get_instance(cfg)
    crawler: HistoricalCrawler | None = None
    listener: RealtimeListener | None = None
    try:
        await manager.initialize()

        tasks = []
        if mode in ("all", "crawler"):
            crawler = HistoricalCrawler(manager)
            await crawler.start()
            tasks.append(_stats_loop(crawler, cfg.stats_log_interval_sec))

        if mode in ("all", "listener"):
            import uvicorn

            from prediction_indexer.api import create_app

            hub = BroadcastHub()
            listener = RealtimeListener(manager, hub)
            await listener.start()
            api_app = create_app(manager, hub, crawler=crawler, listener=listener)
            api_config = uvicorn.Config(api_app, host=cfg.host, port=cfg.port, log_level="warning")
            tasks.append(uvicorn.Server(api_config).serve())
            log.info("API │ serving on %s:%d (/api/status, /ws)", cfg.host, cfg.port)

        if not tasks:
            return
        await asyncio.gather(*tasks)
    finally:
        if listener is not None:
            await listener.stop()
        if crawler is not None:
            await crawler.stop()
        await manager.close()


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    load_dotenv()
    raw_cfg = load_yaml_config(Path(args.config))
    try:
        cfg = load_indexer_config(raw_cfg)
    except ValueError as e:
        print(e, file=sys.stderr)
        sys.exit(2)

    _setup_logging(args.log_level or cfg.log_level, args.mode)
    log.info("INIT mode=%s contract=%s", args.mode, cfg.contract_address)

    try:
        asyncio.run(_run(cfg, args.mode))
    except KeyboardInterrupt:
        log.info("%sSHUTDOWN user interrupt%s", C_YELLOW, C_RESET)
        sys.exit(0)
    except (NodeExhaustedError, DatabaseUnavailableError) as e:
        log.error("%sFATAL%s │ %s", C_RED, C_RESET, e)
        sys.exit(1)


if __name__ == "__main__":
    main()
