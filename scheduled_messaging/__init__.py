"""
Scheduled Messaging Service Package.

Schedules text, voice and audio messages to bulk recipient lists and delivers
them through a primary/backup provider gateway.
"""

__version__ = "1.0.0"
__description__ = "Scheduled bulk messaging with provider failover"
