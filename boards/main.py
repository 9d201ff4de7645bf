import asyncio
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from boards.config import Config
from boards.database.database import Database
from boards.services.configuration import ConfigurationService
from boards.services.leaderboard import LeaderboardService
from boards.services.leaderboard_client import ExternalLeaderboardClient, HttpLeaderboardClient
from boards.services.proof_ingestion import ProofIngestionService
from boards.services.rate_limiter import SimpleRateLimiter
from boards.services.seed_configurations import INITIAL_CONFIGS, seed_configurations
from boards.services.sync_engine import SyncEngine
from boards.utils.error_embeds import ErrorEmbeds
from boards.utils.logger import setup_logger

COGS = (
    'boards.cogs.sync',
    'boards.cogs.boards',
)

# Package logger: engine modules log through logging.getLogger(__name__) below it
logger = setup_logger('boards')


class BoardsBot(commands.Bot):
    """Hosts the sync engine and exposes boards, points and admin commands."""

    def __init__(self, client: Optional[ExternalLeaderboardClient] = None):
        intents = discord.Intents.default()
        intents.guilds = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents, help_command=None)

        self.tree.on_error = self.on_app_command_error

        self.db: Optional[Database] = None
        self.rate_limiter = SimpleRateLimiter()
        self.upstream_client: ExternalLeaderboardClient = client or HttpLeaderboardClient()
        self.config_service: Optional[ConfigurationService] = None
        self.sync_engine: Optional[SyncEngine] = None
        self.leaderboard_service: Optional[LeaderboardService] = None
        self.proof_service: Optional[ProofIngestionService] = None

    async def setup_hook(self):
        logger.info("Setting up Boards bot...")

        self.db = Database()
        await self.db.initialize()

        seeded = await seed_configurations(self.db)
        if seeded:
            logger.info(f"Seeded {seeded} missing configuration keys")
        self.config_service = ConfigurationService(self.db.session_factory, defaults=INITIAL_CONFIGS)
        await self.config_service.load_all()

        self.sync_engine = SyncEngine(self.db, self.upstream_client, self.config_service)
        self.leaderboard_service = LeaderboardService(self.db.session_factory)
        self.proof_service = ProofIngestionService(self.db.session_factory)

        await self.load_cogs()
        await self.sync_commands()
        logger.info("Boards bot setup complete")

    async def load_cogs(self):
        for cog in COGS:
            try:
                await self.load_extension(cog)
                logger.info(f"Loaded cog: {cog}")
            except Exception as e:
                logger.error(f"Failed to load cog {cog}: {e}", exc_info=True)

    async def sync_commands(self):
        """Push slash commands to the configured guilds, or globally when none are set."""
        if not self.tree.get_commands():
            logger.warning("No application commands registered; check the cog loading errors above")
            return

        guild_ids = Config.get_guild_ids()
        if not guild_ids:
            try:
                synced = await self.tree.sync()
                logger.info(f"Synced {len(synced)} command(s) globally (propagation can take up to an hour)")
            except discord.HTTPException as e:
                logger.error(f"Global command sync failed: {e}", exc_info=True)
            return

        for guild_id in guild_ids:
            guild = discord.Object(id=guild_id)
            self.tree.copy_global_to(guild=guild)
            try:
                synced = await self.tree.sync(guild=guild)
                logger.info(f"Synced {len(synced)} command(s) to guild {guild_id}")
            except discord.Forbidden:
                logger.error(f"Missing applications.commands scope in guild {guild_id}")
            except discord.HTTPException as e:
                logger.error(f"Command sync to guild {guild_id} failed ({e.status}): {e.text}")

    async def on_ready(self):
        logger.info(f"{self.user} connected to {len(self.guilds)} guild(s)")
        await self.change_presence(activity=discord.Game(name="Leaderboards | /board"))

    async def on_app_command_error(self, interaction: discord.Interaction, error: app_commands.AppCommandError):
        """Last-resort handler for errors a command did not handle itself."""
        command = interaction.command.name if interaction.command else 'unknown'
        if isinstance(error, app_commands.CommandOnCooldown):
            embed = ErrorEmbeds.cooldown(error.retry_after)
        elif isinstance(error, app_commands.CheckFailure):
            logger.info(f"Check failed for /{command} by {interaction.user}")
            embed = ErrorEmbeds.permission_denied()
        else:
            logger.error(f"Unhandled error in /{command}: {error}", exc_info=error)
            embed = ErrorEmbeds.unexpected_error()

        try:
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error(f"Could not report error for /{command}: {e}")

    async def close(self):
        logger.info("Shutting down Boards bot...")
        await self.upstream_client.close()
        if self.db:
            await self.db.close()
        await super().close()


async def main():
    Config.validate()
    bot = BoardsBot()
    async with bot:
        await bot.start(Config.DISCORD_TOKEN)


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    run()
