"""Infrastructure adapters: database, Redis, chain, blob storage, webhooks."""
