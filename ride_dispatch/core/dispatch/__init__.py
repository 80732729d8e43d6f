"""
Движок диспетчеризации: поиск кандидатов, предложения водителям и их разрешение.
"""
