"""U.S. Tax Assistant - chat front-end for a hosted language model.

Entry point for the application.
Usage:
    taxassist                       # Start the HTTP endpoint (default :3978)
    taxassist --init                # Write the default config
    taxassist --chat                # Chat in the terminal
    taxassist --host 127.0.0.1 --port 8080
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog

from taxassist.config import TaxAssistConfig, get_taxassist_home, load_config, save_default_config
from taxassist.core.disclaimer import DisclaimerClassifier
from taxassist.core.engine import Engine
from taxassist.core.memory.history import create_history_store
from taxassist.core.memory.session import SessionState
from taxassist.core.memory.tokens import TokenCounter
from taxassist.core.memory.trimmer import HistoryTrimmer
from taxassist.core.model_router import ModelRouter

logger = structlog.get_logger()


def setup_logging(level: str = "INFO") -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def _load_env() -> None:
    """Load .env files from the working directory and ~/.taxassist/."""
    from dotenv import load_dotenv

    env_file = Path(".env")
    if env_file.exists():
        load_dotenv(env_file)

    home_env = get_taxassist_home() / ".env"
    if home_env.exists():
        load_dotenv(home_env)


def build_engine(config: TaxAssistConfig) -> Engine:
    """Build the engine with all collaborators.

    Shared by the HTTP and terminal modes.
    """
    model_router = ModelRouter(config)
    counter = TokenCounter(
        model=config.context.tokenizer_model,
        fallback_encoding=config.context.fallback_encoding,
    )
    trimmer = HistoryTrimmer(counter, config.context.max_tokens)
    store = create_history_store(config.storage)
    classifier = DisclaimerClassifier(model_router, config.classifier)

    logger.info(
        "engine_built",
        model=model_router.default_model,
        storage=config.storage.backend,
        max_tokens=config.context.max_tokens,
        exact_tokenizer=counter.is_exact,
    )

    return Engine(
        config=config,
        model_router=model_router,
        token_counter=counter,
        history_store=store,
        trimmer=trimmer,
        classifier=classifier,
        session_state=SessionState(),
    )


async def async_web_main(config: TaxAssistConfig) -> None:
    """Async entry point for the HTTP endpoint."""
    from taxassist.ui.web_server import WebServer

    engine = build_engine(config)
    # Settle the storage backend (and any fallback) before the first turn.
    await engine.store.initialize()
    server = WebServer(engine, config)
    await server.run()


async def async_chat_main(config: TaxAssistConfig, conversation_id: str) -> None:
    """Async entry point for terminal chat."""
    from taxassist.ui.cli import CLI

    engine = build_engine(config)
    cli = CLI(engine, config, conversation_id=conversation_id)
    await cli.run()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="U.S. Tax Assistant",
        prog="taxassist",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Write the default configuration file",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config file (default: ~/.taxassist/config.yaml)",
    )
    parser.add_argument(
        "--web",
        action="store_true",
        help="Start the HTTP endpoint (the default mode)",
    )
    parser.add_argument(
        "--chat",
        action="store_true",
        help="Chat in the terminal instead of serving HTTP",
    )
    parser.add_argument(
        "--conversation",
        type=str,
        default="cli-local",
        help="Conversation id used by --chat",
    )
    parser.add_argument("--host", type=str, default=None, help="Override web.host")
    parser.add_argument("--port", type=int, default=None, help="Override web.port")
    args = parser.parse_args()

    config_path = Path(args.config) if args.config else None

    if args.init:
        setup_logging()
        path = save_default_config(config_path)
        print(f"Default config saved to: {path}")
        return

    _load_env()
    config = load_config(config_path)
    if args.host:
        config.web.host = args.host
    if args.port:
        config.web.port = args.port

    setup_logging(config.log_level)

    try:
        if args.chat:
            asyncio.run(async_chat_main(config, args.conversation))
        else:
            asyncio.run(async_web_main(config))
    except KeyboardInterrupt:
        print("\nGoodbye!")


if __name__ == "__main__":
    main()
