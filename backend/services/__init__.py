"""Domain services: policies, scanning, proposals, execution and reconciliation."""
