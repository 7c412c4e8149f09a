"""
MusterPoint - Emergency coordination core

Coordinates attendee-raised emergencies with nearby volunteers: lifecycle state
machine, dual-party resolution, duplicate prevention, advisory locking,
client state reconciliation, location tracking and notification fan-out.
"""

__version__ = "1.0.0"
__author__ = "MusterPoint Development Team"
