"""
Relay application package.

FastAPI service that forwards OpenAI-compatible API calls to a fixed upstream
host, injecting the server-side credential, and relays the upstream realtime
speech WebSocket API.
"""
