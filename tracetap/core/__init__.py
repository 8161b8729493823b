"""
Tracetap - Core Module

Records, pricing, storage and the proxy orchestrator.

Applications point their LLM client at the local proxy and every call is:
- Routed to the right upstream provider
- Relayed back unchanged (streamed or not)
- Recorded as a span with tokens, cost and timing

External instrumentation can push OTLP traces, logs and metrics into the
same store.
"""
