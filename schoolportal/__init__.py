"""
SchoolPortal client

Resilient API client plus the timed, proctored submission flow for
school tests.
"""

__version__ = "1.0.0"
