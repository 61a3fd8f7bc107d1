"""
RAG (Retrieval Augmented Generation) app.

Provides:
- User-scoped document retrieval
- Bounded context assembly
- Streaming completions relayed to the client over SSE
- Health probes
"""
