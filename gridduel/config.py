import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """GridDuel configuration settings"""

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///gridduel.db')

    # Runtime settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')
    LOG_TO_FILE = os.getenv('LOG_TO_FILE', 'True').lower() == 'true'

    # Rating settings
    STARTING_ELO = int(os.getenv('STARTING_ELO', 1200))

    # Elo calculation settings
    K_FACTOR_PROVISIONAL = int(os.getenv('K_FACTOR_PROVISIONAL', 32))  # First 12 rated games
    K_FACTOR_STANDARD = int(os.getenv('K_FACTOR_STANDARD', 24))        # All subsequent games
    PROVISIONAL_MATCH_COUNT = int(os.getenv('PROVISIONAL_MATCH_COUNT', 12))

    # Optimistic concurrency: attempts per match transition before giving up
    TRANSITION_MAX_RETRIES = int(os.getenv('TRANSITION_MAX_RETRIES', 3))

    @classmethod
    def validate(cls):
        """Validate that the rating configuration is usable"""
        if cls.K_FACTOR_PROVISIONAL <= 0 or cls.K_FACTOR_STANDARD <= 0:
            raise ValueError("K_FACTOR_PROVISIONAL and K_FACTOR_STANDARD must be positive")
        if cls.PROVISIONAL_MATCH_COUNT < 0:
            raise ValueError("PROVISIONAL_MATCH_COUNT cannot be negative")
        if cls.TRANSITION_MAX_RETRIES < 1:
            raise ValueError("TRANSITION_MAX_RETRIES must be at least 1")
