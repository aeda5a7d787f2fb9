"""
Authentication components for the CaseFlow sync client.
"""
