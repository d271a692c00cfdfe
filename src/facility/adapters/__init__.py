"""Concrete collaborators: YAML user store, ARP lookups, HTTP agent sink."""
