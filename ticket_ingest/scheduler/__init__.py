"""Polling scheduler"""
from .mailbox_supervisor import MailboxSupervisor, PollingLoop

__all__ = ['MailboxSupervisor', 'PollingLoop']
