"""Group message harvester: scheduled, idempotent ingestion of chat-group messages."""
