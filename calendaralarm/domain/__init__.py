"""Domain logic: next-alarm computation, recipient policy and reconciliation."""
