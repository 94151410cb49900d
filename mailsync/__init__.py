"""Mailbox synchronization engine for the CRM."""
