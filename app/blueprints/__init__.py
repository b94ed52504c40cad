"""
Grant Reporting Platform
Blueprint registry.
"""
