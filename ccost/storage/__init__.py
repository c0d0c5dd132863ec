"""
Storage layer for the usage cache.
"""
