"""
Ledger module for the Ledger worker bot.

Everything that talks to the rewards platform on behalf of one account: the
REST client, the persistent worker channel, the per-account pipeline and the
simulated hardware profile each worker reports.

Submodules:
    accounts: ``Account`` model and credential-file loader.
    api: ``LedgerClient`` REST/WebSocket client with classified errors and retry.
    assignments: ``AssignmentStore`` persisted ``worker_id -> (gpu, storage)`` map.
    messages: REGISTER / HEARTBEAT payload builders.
    session: ``ConnectionSession`` connect/register/heartbeat/reconnect state machine.
    pipeline: ``AccountPipeline`` identity -> rewards -> claim -> session orchestration.
"""
