"""
Centralized error embeds for consistent error handling across the Boards bot.
"""

import discord

from boards.utils.sync_exceptions import SyncException


class ErrorEmbeds:
    """Centralized error embed factory for consistent error handling."""

    @staticmethod
    def category_not_found(category: str) -> discord.Embed:
        return discord.Embed(
            title="Category Not Found",
            description=f"No category matches `{category}`.",
            color=discord.Color.red()
        )

    @staticmethod
    def player_not_found(external_id: str) -> discord.Embed:
        return discord.Embed(
            title="Player Not Found",
            description=f"No runs have been synced for `{external_id}` yet.",
            color=discord.Color.red()
        )

    @staticmethod
    def no_runs() -> discord.Embed:
        """Create embed for an empty board."""
        return discord.Embed(
            title="No Ranked Runs",
            description="Nothing has been ranked here yet. Check back after the next sync.",
            color=discord.Color.orange()
        )

    @staticmethod
    def sync_error(error: SyncException) -> discord.Embed:
        """Create embed from a sync exception's user-facing message."""
        return discord.Embed(
            title="Sync Error",
            description=error.user_message,
            color=discord.Color.red()
        )

    @staticmethod
    def sync_in_progress() -> discord.Embed:
        return discord.Embed(
            title="Sync In Progress",
            description="A sync cycle is already running. Try again once it finishes.",
            color=discord.Color.orange()
        )

    @staticmethod
    def command_error(error: str) -> discord.Embed:
        """Create embed for general command errors."""
        return discord.Embed(
            title="Command Error",
            description=f"An error occurred: {error}\n\nPlease try again or contact an administrator.",
            color=discord.Color.red()
        )

    @staticmethod
    def invalid_input(message: str) -> discord.Embed:
        """Create embed for invalid user input."""
        return discord.Embed(
            title="Invalid Input",
            description=message,
            color=discord.Color.red()
        )

    @staticmethod
    def permission_denied() -> discord.Embed:
        """Create embed for permission errors."""
        return discord.Embed(
            title="❌ Access Denied",
            description="This command is restricted to the bot owner.",
            color=discord.Color.red()
        )

    @staticmethod
    def cooldown(retry_after: float) -> discord.Embed:
        return discord.Embed(
            title="❌ Slow Down",
            description=f"This command is on cooldown. Try again in {retry_after:.1f} seconds.",
            color=discord.Color.red()
        )

    @staticmethod
    def unexpected_error() -> discord.Embed:
        return discord.Embed(
            title="❌ Unexpected Error",
            description="Something went wrong while processing your command. It has been logged.",
            color=discord.Color.red()
        )
