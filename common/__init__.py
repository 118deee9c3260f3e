"""Configuración, esquema y conexión a BD compartidos."""
