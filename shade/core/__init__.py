"""Provider gateway core: orchestration, context building, caching and persistence."""
