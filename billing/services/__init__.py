"""
Business logic services for the billing core.
"""
