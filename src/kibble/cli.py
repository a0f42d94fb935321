from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import signal
import threading

from .config import Config, ConfigError, load_config
from .errors import AlreadyRefreshingError, KibbleError
from .scheduler import Scheduler
from .scraper import Scraper, SourceValidator
from .storage import (
    add_source,
    create_news_topic,
    create_topic,
    get_news_topic,
    init_db,
    set_setting,
    store_secret,
)
from .utils import configure_logging, log_event, validate_url


def _setup_logging() -> logging.Logger:
    return configure_logging("kibble")


def _load(args: argparse.Namespace, logger: logging.Logger) -> Config | None:
    try:
        return load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None


def _install_stop_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    def _handle(signum, _frame) -> None:
        log_event(logger, logging.INFO, "shutdown_requested", signal=signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _cmd_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    if args.interval:
        config = dataclasses.replace(
            config,
            scheduler=dataclasses.replace(config.scheduler, tick_seconds=args.interval),
        )
    stop_event = threading.Event()
    _install_stop_handlers(stop_event, logger)
    init_db(config.paths.state_db).close()
    Scheduler(config, stop_event=stop_event).run()
    return 0


def _cmd_refresh_topic(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        result = Scheduler(config).refresh_now(args.topic_id)
    except AlreadyRefreshingError as exc:
        log_event(logger, logging.ERROR, "refresh_rejected", error=str(exc))
        return 1
    except KibbleError as exc:
        log_event(logger, logging.ERROR, "refresh_failed", error=str(exc))
        return 1
    logger.info(json.dumps(dataclasses.asdict(result), indent=2))
    return 1 if result.error else 0


def _cmd_refresh_news(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        result = Scheduler(config).refresh_news_now(args.topic_id)
    except KibbleError as exc:
        log_event(logger, logging.ERROR, "refresh_failed", error=str(exc))
        return 1
    if result is None:
        return 0
    logger.info(json.dumps(dataclasses.asdict(result), indent=2))
    return 0 if result.status == "completed" else 1


def _cmd_discover_sources(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        outcome = Scheduler(config).discover_sources_now(args.topic_id)
    except KibbleError as exc:
        log_event(logger, logging.ERROR, "discovery_failed", error=str(exc))
        return 1
    logger.info(json.dumps(dataclasses.asdict(outcome), indent=2))
    return 0


def _cmd_add_topic(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    with init_db(config.paths.state_db) as conn:
        topic_id = create_topic(
            conn,
            args.name,
            args.description,
            facts_per_refresh=args.facts_per_refresh,
            refresh_interval_minutes=args.interval_minutes,
            ai_provider=args.provider,
            is_niche=args.niche,
        )
    log_event(logger, logging.INFO, "topic_added", topic_id=topic_id, name=args.name)
    return 0


def _cmd_add_news_topic(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    with init_db(config.paths.state_db) as conn:
        topic_id = create_news_topic(
            conn,
            args.name,
            args.description,
            stories_per_refresh=args.stories_per_refresh,
            refresh_interval_minutes=args.interval_minutes,
            ai_provider=args.provider,
            is_niche=args.niche,
        )
    log_event(logger, logging.INFO, "news_topic_added", news_topic_id=topic_id, name=args.name)
    return 0


def _cmd_add_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        url = validate_url(args.url)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "source_add_error", error=str(exc))
        return 1
    with init_db(config.paths.state_db) as conn:
        if get_news_topic(conn, args.topic_id) is None:
            log_event(logger, logging.ERROR, "news_topic_not_found", news_topic_id=args.topic_id)
            return 1
        source_id = add_source(conn, args.topic_id, url, args.name, is_manual=True)
    if source_id is None:
        log_event(logger, logging.WARNING, "source_exists", url=url)
        return 0
    log_event(logger, logging.INFO, "source_added", source_id=source_id, url=url)
    return 0


def _cmd_set_setting(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    with init_db(config.paths.state_db) as conn:
        set_setting(conn, args.key, value)
    log_event(logger, logging.INFO, "setting_updated", key=args.key)
    return 0


def _cmd_set_secret(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    try:
        with init_db(config.paths.state_db) as conn:
            store_secret(conn, args.key, args.value)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "secret_store_error", key=args.key, error=str(exc))
        return 1
    log_event(logger, logging.INFO, "secret_updated", key=args.key)
    return 0


def _cmd_validate_source(args: argparse.Namespace, logger: logging.Logger) -> int:
    config = _load(args, logger)
    if config is None:
        return 1
    validator = SourceValidator(
        Scraper(config),
        timeout=config.sources.validation_timeout_seconds,
        min_chars=config.sources.min_validation_chars,
    )
    result = validator.validate(args.url, args.name)
    logger.info(json.dumps(dataclasses.asdict(result), indent=2))
    return 0 if result.ok else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kibble", description="Kibble facts and news refresher")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to KIBBLE_CONFIG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the refresh scheduler until interrupted")
    run_parser.add_argument("--interval", type=int, default=0, help="Seconds between ticks")
    run_parser.set_defaults(func=_cmd_run)

    refresh_topic = subparsers.add_parser("refresh-topic", help="Refresh a facts topic now")
    refresh_topic.add_argument("topic_id", type=int)
    refresh_topic.set_defaults(func=_cmd_refresh_topic)

    refresh_news = subparsers.add_parser("refresh-news", help="Refresh a news topic now")
    refresh_news.add_argument("topic_id", type=int)
    refresh_news.set_defaults(func=_cmd_refresh_news)

    discover = subparsers.add_parser("discover-sources", help="Rediscover sources for a news topic")
    discover.add_argument("topic_id", type=int)
    discover.set_defaults(func=_cmd_discover_sources)

    add_topic = subparsers.add_parser("add-topic", help="Add a facts topic")
    add_topic.add_argument("name")
    add_topic.add_argument("--description", default="")
    add_topic.add_argument("--facts-per-refresh", type=int, default=5)
    add_topic.add_argument("--interval-minutes", type=int, default=1440)
    add_topic.add_argument("--provider", default="", help="gemini, ollama or chutes")
    add_topic.add_argument("--niche", action="store_true", help="Augment prompts with encyclopedia research")
    add_topic.set_defaults(func=_cmd_add_topic)

    add_news_topic = subparsers.add_parser("add-news-topic", help="Add a news topic")
    add_news_topic.add_argument("name")
    add_news_topic.add_argument("--description", default="")
    add_news_topic.add_argument("--stories-per-refresh", type=int, default=5)
    add_news_topic.add_argument("--interval-minutes", type=int, default=120)
    add_news_topic.add_argument("--provider", default="", help="gemini, ollama or chutes")
    add_news_topic.add_argument("--niche", action="store_true", help="Augment discovery with encyclopedia research")
    add_news_topic.set_defaults(func=_cmd_add_news_topic)

    add_source_parser = subparsers.add_parser("add-source", help="Add a manual source to a news topic")
    add_source_parser.add_argument("topic_id", type=int)
    add_source_parser.add_argument("url")
    add_source_parser.add_argument("--name", default="")
    add_source_parser.set_defaults(func=_cmd_add_source)

    set_setting_parser = subparsers.add_parser("set-setting", help="Store a setting (JSON or plain text)")
    set_setting_parser.add_argument("key")
    set_setting_parser.add_argument("value")
    set_setting_parser.set_defaults(func=_cmd_set_setting)

    set_secret_parser = subparsers.add_parser("set-secret", help="Store an encrypted API key")
    set_secret_parser.add_argument("key", choices=["gemini_api_key", "chutes_api_key"])
    set_secret_parser.add_argument("value")
    set_secret_parser.set_defaults(func=_cmd_set_secret)

    validate = subparsers.add_parser("validate-source", help="Test-scrape a candidate source URL")
    validate.add_argument("url")
    validate.add_argument("--name", default="")
    validate.set_defaults(func=_cmd_validate_source)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)
