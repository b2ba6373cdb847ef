"""
Derived cache clients.

- vector_store: Pinecone data-plane REST client (namespaces, vector ids)
- graph_store: Neo4j HTTP transactional client (MERGE batches)
- cache_sync: best-effort post-commit propagation
"""
