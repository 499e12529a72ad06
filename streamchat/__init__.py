"""Live-stream chat synchronization and moderation service."""
