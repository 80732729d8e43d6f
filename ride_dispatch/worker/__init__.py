"""
Фоновые воркеры диспетчеризации.
"""
