import os
from dotenv import load_dotenv

load_dotenv()

class Config:
    """Bot configuration settings"""

    # Discord settings
    DISCORD_TOKEN = os.getenv('DISCORD_TOKEN')
    DISCORD_GUILD_ID = int(os.getenv('DISCORD_GUILD_ID', 0))
    DISCORD_GUILD_IDS = os.getenv('DISCORD_GUILD_IDS', '')  # Comma-separated for multi-guild support
    OWNER_DISCORD_ID = int(os.getenv('OWNER_DISCORD_ID', 0))

    # Database settings
    DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///boards.db')

    # Bot settings
    DEBUG = os.getenv('DEBUG', 'False').lower() == 'true'
    LOG_DIR = os.getenv('LOG_DIR', 'logs')

    # Upstream leaderboard platform
    UPSTREAM_BASE_URL = os.getenv('UPSTREAM_BASE_URL', '')
    UPSTREAM_PROFILE_URL = os.getenv(
        'UPSTREAM_PROFILE_URL',
        'https://api.steampowered.com/ISteamUser/GetPlayerSummaries/v2/'
    )
    UPSTREAM_API_KEY = os.getenv('UPSTREAM_API_KEY', '')
    UPSTREAM_TIMEOUT_SECONDS = float(os.getenv('UPSTREAM_TIMEOUT_SECONDS', 20))

    # Sync defaults (overridable at runtime through ConfigurationService)
    RATE_LIMIT_PER_SECOND = 5.0
    RATE_LIMIT_BURST = 5
    PAGE_SIZE = 100
    PAGE_BUDGET = 50
    MAX_ATTEMPTS = 4
    BACKOFF_BASE_SECONDS = 0.5
    ACQUIRE_TIMEOUT_SECONDS = 30.0
    CYCLE_DEADLINE_SECONDS = 300.0
    MAX_WORKERS = 4

    # Coop pairing
    COOP_TIMESTAMP_TOLERANCE_SECONDS = 60

    # Points
    BASE_POINTS = 200.0
    RESULTS_CUTOFF = 200

    @classmethod
    def get_guild_ids(cls):
        """Get list of guild IDs for command syncing"""
        if cls.DISCORD_GUILD_IDS:
            try:
                return [int(guild_id.strip()) for guild_id in cls.DISCORD_GUILD_IDS.split(',') if guild_id.strip()]
            except ValueError:
                raise ValueError("DISCORD_GUILD_IDS must be comma-separated integers")
        elif cls.DISCORD_GUILD_ID:
            return [cls.DISCORD_GUILD_ID]
        else:
            # Global sync
            return []

    @classmethod
    def validate(cls):
        """Validate that required configuration is present"""
        if not cls.DISCORD_TOKEN:
            raise ValueError("DISCORD_TOKEN is required")
        if not cls.OWNER_DISCORD_ID:
            raise ValueError("OWNER_DISCORD_ID is required")
        if not cls.UPSTREAM_BASE_URL:
            raise ValueError("UPSTREAM_BASE_URL is required")
