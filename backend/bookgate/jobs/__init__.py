"""
Background jobs module.
"""
