import discord
from discord import app_commands
from discord.ext import commands
from typing import List, Optional
from boards.constants import PaginationConstants, UIConstants
from boards.data_models.leaderboard import CategoryPage, PointsPage, RunEntry
from boards.services.rate_limiter import rate_limit
from boards.utils.error_embeds import ErrorEmbeds
from boards.utils.sync_exceptions import CategoryNotFoundError
import logging

logger = logging.getLogger(__name__)


def format_score(score: float) -> str:
    """Render a time in seconds as m:ss.ss"""
    minutes, seconds = divmod(score, 60)
    if minutes:
        return f"{int(minutes)}:{seconds:05.2f}"
    return f"{seconds:.2f}s"


def proof_badges(entry: RunEntry) -> str:
    badges = []
    if entry.demo_required:
        badges.append(UIConstants.DEMO_EMOJI if entry.demo_satisfied else f"{UIConstants.MISSING_PROOF_EMOJI}demo")
    if entry.video_required:
        badges.append(UIConstants.VIDEO_EMOJI if entry.video_satisfied else f"{UIConstants.MISSING_PROOF_EMOJI}video")
    return " ".join(badges)


class BoardsCog(commands.Cog):
    """Public read-only leaderboard commands"""

    def __init__(self, bot):
        self.bot = bot
        self.leaderboard_service = bot.leaderboard_service

    @app_commands.command(name="board", description="View a category's ranked runs")
    @app_commands.describe(category_id="Category ID", page="Page number")
    @rate_limit("board", limit=5, window=60)
    async def board(self, interaction: discord.Interaction, category_id: int, page: int = 1):
        """Display one page of a category board."""
        await interaction.response.defer()

        try:
            board_page = await self.leaderboard_service.get_category_page(category_id, page=page)
            if not board_page.entries:
                await interaction.followup.send(embed=ErrorEmbeds.no_runs())
                return
            await interaction.followup.send(embed=self._build_board_embed(board_page))
        except CategoryNotFoundError:
            await interaction.followup.send(embed=ErrorEmbeds.category_not_found(str(category_id)))
        except ValueError as e:
            await interaction.followup.send(embed=ErrorEmbeds.invalid_input(str(e)))
        except Exception as e:
            logger.error(f"Error in board command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching the board. Please try again later."))

    @app_commands.command(name="coop-pairs", description="View the cooperative pairs of a category")
    @app_commands.describe(category_id="Category ID")
    @rate_limit("coop-pairs", limit=5, window=60)
    async def coop_pairs(self, interaction: discord.Interaction, category_id: int):
        await interaction.response.defer()

        try:
            pairs = await self.leaderboard_service.get_coop_pairs(category_id)
            unpaired = await self.leaderboard_service.get_unpaired_runs(category_id)
        except CategoryNotFoundError:
            await interaction.followup.send(embed=ErrorEmbeds.category_not_found(str(category_id)))
            return
        except Exception as e:
            logger.error(f"Error in coop-pairs command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching pairs. Please try again later."))
            return

        embed = discord.Embed(
            title=f"🤝 Coop Pairs (category #{category_id})",
            color=UIConstants.DEFAULT_EMBED_COLOR
        )
        lines = []
        for pair in pairs[:PaginationConstants.MAX_PAGE_SIZE]:
            rank = f"#{pair.rank}" if pair.rank else "unranked"
            lines.append(
                f"**{rank}** {pair.player1_name} + {pair.player2_name} "
                f"({pair.points:.2f} pts, Δ{pair.timestamp_delta_seconds:.0f}s)"
            )
        embed.description = "\n".join(lines) if lines else "No active pairs."
        if unpaired:
            waiting = [f"{run.player_name}: {format_score(run.score)}" for run in unpaired[:10]]
            embed.add_field(name=f"Waiting for a partner ({len(unpaired)})", value="\n".join(waiting), inline=False)
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="points", description="View the overall points ranking")
    @app_commands.describe(page="Page number")
    @rate_limit("points", limit=5, window=60)
    async def points(self, interaction: discord.Interaction, page: int = 1):
        await interaction.response.defer()

        try:
            points_page = await self.leaderboard_service.get_points_ranking(page=page)
            await interaction.followup.send(embed=self._build_points_embed(points_page))
        except ValueError as e:
            await interaction.followup.send(embed=ErrorEmbeds.invalid_input(str(e)))
        except Exception as e:
            logger.error(f"Error in points command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching points. Please try again later."))

    @app_commands.command(name="runs", description="View a player's ranked runs")
    @app_commands.describe(external_id="Upstream player identity")
    @rate_limit("runs", limit=5, window=60)
    async def runs(self, interaction: discord.Interaction, external_id: str):
        await interaction.response.defer()

        try:
            entries = await self.leaderboard_service.get_player_runs(external_id)
        except Exception as e:
            logger.error(f"Error in runs command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching runs. Please try again later."))
            return

        if not entries:
            await interaction.followup.send(embed=ErrorEmbeds.player_not_found(external_id))
            return

        embed = discord.Embed(title=f"Runs of {external_id}", color=UIConstants.DEFAULT_EMBED_COLOR)
        embed.description = "\n".join(self._format_run(entry, show_category=True) for entry in entries[:25])
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="history", description="View every time a player has held")
    @app_commands.describe(external_id="Upstream player identity", category_id="Limit to one category")
    @rate_limit("history", limit=5, window=60)
    async def history(self, interaction: discord.Interaction, external_id: str, category_id: Optional[int] = None):
        await interaction.response.defer()

        try:
            rows = await self.leaderboard_service.get_run_history(external_id, category_id)
        except Exception as e:
            logger.error(f"Error in history command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching history. Please try again later."))
            return

        if not rows:
            await interaction.followup.send(embed=ErrorEmbeds.player_not_found(external_id))
            return

        embed = discord.Embed(title=f"History of {external_id}", color=UIConstants.DEFAULT_EMBED_COLOR)
        # Newest first
        lines = [
            f"{row.category_name}: {format_score(row.score)} (`{row.entry_id}`, {row.submitted_at:%Y-%m-%d})"
            for row in reversed(rows)
        ]
        embed.description = "\n".join(lines[:25])
        embed.set_footer(text=f"{len(rows)} recorded time(s)")
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="banned", description="View runs held out of ranking by a ban")
    @app_commands.describe(category_id="Limit to one category")
    @rate_limit("banned", limit=5, window=60)
    async def banned(self, interaction: discord.Interaction, category_id: Optional[int] = None):
        await interaction.response.defer()

        try:
            rows = await self.leaderboard_service.get_banned_runs(category_id)
        except CategoryNotFoundError:
            await interaction.followup.send(embed=ErrorEmbeds.category_not_found(str(category_id)))
            return
        except Exception as e:
            logger.error(f"Error in banned command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching banned runs. Please try again later."))
            return

        embed = discord.Embed(title="🚫 Banned Runs", color=UIConstants.ERROR_COLOR)
        lines = [
            f"{row.category_name}: {' + '.join(row.player_names)} {format_score(row.score)} ({row.reason})"
            for row in rows[:25]
        ]
        embed.description = "\n".join(lines) if lines else "No banned runs."
        await interaction.followup.send(embed=embed)

    @app_commands.command(name="preview", description="View the top of every category board")
    @app_commands.describe(map_id="Limit to one map")
    @rate_limit("preview", limit=5, window=60)
    async def preview(self, interaction: discord.Interaction, map_id: Optional[str] = None):
        await interaction.response.defer()

        try:
            previews = await self.leaderboard_service.get_previews(map_id)
        except Exception as e:
            logger.error(f"Error in preview command: {e}")
            await interaction.followup.send(embed=ErrorEmbeds.command_error("An error occurred while fetching previews. Please try again later."))
            return

        if not previews:
            await interaction.followup.send(embed=ErrorEmbeds.no_runs())
            return

        embed = discord.Embed(title=f"{UIConstants.TROPHY_EMOJI} Previews", color=UIConstants.GOLD_RANK_COLOR)
        for category_preview in previews[:25]:
            lines = [self._format_run(entry) for entry in category_preview.entries]
            embed.add_field(
                name=f"{category_preview.category_name} ({category_preview.map_id})",
                value="\n".join(lines)[:1024] if lines else "No ranked runs.",
                inline=False
            )
        await interaction.followup.send(embed=embed)

    def _format_run(self, entry: RunEntry, show_category: bool = False) -> str:
        prefix = f"{entry.category_name}: " if show_category else ""
        medal = f"{UIConstants.TROPHY_EMOJI} " if entry.rank == 1 else ""
        line = (
            f"{prefix}{medal}**#{entry.rank}** {' + '.join(entry.player_names)} "
            f"{format_score(entry.score)} ({entry.points:.2f} pts)"
        )
        badges = proof_badges(entry)
        return f"{line} {badges}" if badges else line

    def _build_board_embed(self, board_page: CategoryPage) -> discord.Embed:
        color = UIConstants.GOLD_RANK_COLOR if board_page.current_page == 1 else UIConstants.DEFAULT_EMBED_COLOR
        embed = discord.Embed(
            title=f"{board_page.category_name} ({board_page.mode})",
            description="\n".join(self._format_run(entry) for entry in board_page.entries),
            color=color
        )
        embed.set_footer(
            text=f"Page {board_page.current_page}/{board_page.total_pages} | {board_page.total_runs} ranked runs"
        )
        return embed

    def _build_points_embed(self, points_page: PointsPage) -> discord.Embed:
        lines: List[str] = [
            f"**#{entry.rank}** {entry.display_name} {entry.total_points:.2f} pts"
            for entry in points_page.entries
        ]
        embed = discord.Embed(
            title=f"{UIConstants.TROPHY_EMOJI} Points Ranking",
            description="\n".join(lines) if lines else "No players have points yet.",
            color=UIConstants.DEFAULT_EMBED_COLOR
        )
        embed.set_footer(text=f"Page {points_page.current_page}/{points_page.total_pages} | {points_page.total_players} players")
        return embed


async def setup(bot):
    await bot.add_cog(BoardsCog(bot))
