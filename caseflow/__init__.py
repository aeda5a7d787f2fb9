"""
CaseFlow sync client: authenticated, offline-resilient case synchronization
for field verification agents.
"""

__version__ = "2.1.0"
