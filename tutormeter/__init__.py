"""
TutorMeter - Usage Metering for Realtime AI Tutoring

Meters tokens and sessions of realtime tutoring conversations against
monthly plan quotas and computes the cost of every session.
"""

__version__ = "0.1.0"
