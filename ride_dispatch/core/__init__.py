"""
Бизнес-логика.
"""
