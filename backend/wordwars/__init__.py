"""
WORDLE WARS - Orquestador del ciclo de vida y liquidación de partidas.
"""

__version__ = "1.0.0"
