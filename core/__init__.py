"""
Core module for the Ledger worker bot.

This package contains the process-wide infrastructure: configuration,
logging, proxy loading, retry policy, the account registry and the scheduler
that fans work out across every account.

Submodules:
    config: Application settings (``BotSettings``) via Pydantic.
    orchestrator: ``FarmScheduler`` bootstrap / claim / heartbeat fan-out.
    retry: ``ErrorType``, ``ApiError``, ``RetryPolicy`` and the ``retry`` combinator.
    registry: ``AccountRegistry`` write-once token -> account id map.
    proxy_manager: ``Proxy`` endpoints and 1:1 positional assignment.
    logging_setup: Compressed rotating file + safe console logging.
    utils: Corruption-safe JSON read/write helpers, secret masking.
"""
