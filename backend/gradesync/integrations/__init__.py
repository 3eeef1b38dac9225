"""
External system integrations.
"""
