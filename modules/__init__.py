"""
Actuation confirmation building blocks.
"""
