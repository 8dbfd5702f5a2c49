"""
Core market accounting
"""
