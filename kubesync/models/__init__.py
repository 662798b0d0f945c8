"""Domain models shared across kubesync components."""
