"""Rentals configuration.

Built once from ``RENTAL_*`` environment variables on import.
"""

from engine.config import RentalConfig

config = RentalConfig.from_env()
