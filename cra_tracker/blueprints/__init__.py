"""
CRA Request Tracker
Blueprint registry.
"""
