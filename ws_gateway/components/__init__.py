"""
WebSocket Gateway Components.

Organized by concern:
- core/       - Constants, client identity, error taxonomy
- store/      - Shared key-value store client
- connection/ - Local registry, heartbeat, reaper, rate limiting
- presence/   - Cluster-wide presence and typing indicators
- broadcast/  - Room membership and cross-instance fan-out
- events/     - Wire event names, client payloads, broker dispatcher
- metrics/    - Counters kept in the shared store
- resilience/ - Circuit breaker and jittered retry
- endpoints/  - The /ws/chat endpoint

Import from the specific submodules; this package re-exports nothing so
that submodules can depend on each other without import cycles.
"""
