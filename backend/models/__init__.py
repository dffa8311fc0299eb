"""
Models package

Storage-agnostic domain models live in models.domain.
"""
