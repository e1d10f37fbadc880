"""Configuration management."""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Config:
    """Application configuration."""

    # Database
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "bookcache")
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")

    @property
    def DATABASE_URL(self):
        """Build PostgreSQL connection string."""
        return f"postgresql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Upstream catalogs
    OPEN_LIBRARY_BASE_URL = os.getenv("OPEN_LIBRARY_BASE_URL", "https://openlibrary.org")
    GOOGLE_BOOKS_BASE_URL = os.getenv("GOOGLE_BOOKS_BASE_URL", "https://www.googleapis.com/books/v1")
    GOOGLE_BOOKS_API_KEY = os.getenv("GOOGLE_BOOKS_API_KEY")

    # HTTP defaults
    DEFAULT_TIMEOUT = int(os.getenv("DEFAULT_TIMEOUT", "10"))
    DEFAULT_MAX_RETRIES = int(os.getenv("DEFAULT_MAX_RETRIES", "3"))
    MAX_CONCURRENT_REQUESTS = int(os.getenv("MAX_CONCURRENT_REQUESTS", "5"))

    # Cache policy
    BOOK_CACHE_DAYS = int(os.getenv("BOOK_CACHE_DAYS", "30"))
    RECOMMENDATION_CACHE_DAYS = int(os.getenv("RECOMMENDATION_CACHE_DAYS", "5"))
    AUTO_REFRESH_THRESHOLD = int(os.getenv("AUTO_REFRESH_THRESHOLD", "3"))
    MIN_AUTO_REFRESH_DAYS = int(os.getenv("MIN_AUTO_REFRESH_DAYS", "7"))

    # Search / bulk refresh
    MIN_SEARCH_RESULTS = int(os.getenv("MIN_SEARCH_RESULTS", "5"))
    REFRESH_DELAY_SECONDS = float(os.getenv("REFRESH_DELAY_SECONDS", "1.0"))
