"""Processor, ledger and notification integrations."""
