"""Browser chat channel: wire frames, collaborator interfaces and the per-connection protocol."""
