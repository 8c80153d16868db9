"""Configuration for the promotions service."""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Settings:
    """Environment-driven settings."""

    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///./promotions.db')
    SQL_ECHO = os.getenv('SQL_ECHO', '0') == '1'

    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()


settings = Settings()
