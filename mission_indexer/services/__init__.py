"""Chain access, store access, reconciliation and outbound services."""
