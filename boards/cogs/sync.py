"""
Sync Cog - Scheduled Sync Cycles & Admin Commands

Runs the reconciliation cycle and the avatar refresh as background tasks and
exposes owner-only commands to trigger syncs, record proof and adjust
thresholds, bans and runtime configuration.
"""

import json
from datetime import datetime, timezone
from typing import List

import discord
from discord import app_commands
from discord.ext import commands, tasks

from boards.config import Config
from boards.constants import UIConstants
from boards.data_models.sync import CycleReport
from boards.utils.error_embeds import ErrorEmbeds
from boards.utils.logger import setup_logger
from boards.utils.sync_exceptions import SyncException

logger = setup_logger(__name__)

# Settings that change derived ranks or points for every category
RECOMPUTE_PREFIXES = ('points.', 'coop.')


class SyncCog(commands.Cog):
    """Background sync scheduling and owner-only sync administration"""

    def __init__(self, bot):
        self.bot = bot
        self.db = bot.db
        self.engine = bot.sync_engine
        self.logger = logger

    @commands.Cog.listener()
    async def on_ready(self):
        """Start background tasks once the bot is ready"""
        config = self.bot.config_service
        self.sync_cycle.change_interval(minutes=float(config.get('sync.interval_minutes', 10)))
        self.refresh_avatars.change_interval(hours=float(config.get('avatar.refresh_interval_hours', 24)))
        if not self.sync_cycle.is_running():
            self.sync_cycle.start()
        if not self.refresh_avatars.is_running():
            self.refresh_avatars.start()
        self.logger.info("SyncCog: Background tasks started")

    def cog_unload(self):
        """Stop background tasks when cog is unloaded"""
        self.sync_cycle.cancel()
        self.refresh_avatars.cancel()
        self.logger.info("SyncCog: Background tasks stopped")

    @tasks.loop(minutes=10)
    async def sync_cycle(self):
        """Scheduled reconciliation cycle over every active category"""
        try:
            await self._run_cycle()
        except Exception as e:
            self.logger.error(f"Error in scheduled sync cycle: {e}", exc_info=True)

    @sync_cycle.before_loop
    async def before_sync_cycle(self):
        await self.bot.wait_until_ready()

    @tasks.loop(hours=24)
    async def refresh_avatars(self):
        """Scheduled best-effort avatar refresh"""
        try:
            config = self.bot.config_service
            await self.engine.refresh_avatars(
                limit=int(config.get('avatar.batch_size', 50)),
                stale_after_hours=float(config.get('avatar.stale_after_hours', 72))
            )
        except Exception as e:
            self.logger.error(f"Error in avatar refresh task: {e}", exc_info=True)

    @refresh_avatars.before_loop
    async def before_refresh_avatars(self):
        await self.bot.wait_until_ready()

    async def _run_cycle(self, category_ids=None) -> List[CycleReport]:
        await self.bot.config_service.load_all()
        reports = await self.engine.run_cycle(category_ids)
        await self.bot.leaderboard_service.clear_cache()
        return reports

    @staticmethod
    def _is_owner(interaction: discord.Interaction) -> bool:
        return interaction.user.id == Config.OWNER_DISCORD_ID

    async def _deny(self, interaction: discord.Interaction):
        await interaction.response.send_message(embed=ErrorEmbeds.permission_denied(), ephemeral=True)

    def _report_embed(self, reports: List[CycleReport]) -> discord.Embed:
        failed = [report for report in reports if not report.ok]
        embed = discord.Embed(
            title="✅ Sync Complete" if not failed else "⚠️ Sync Finished With Errors",
            color=discord.Color.green() if not failed else discord.Color.orange(),
            timestamp=datetime.now(timezone.utc)
        )
        if not reports:
            embed.description = "No active categories to sync."
        for report in reports[:25]:
            if report.error:
                state = f"❌ {report.error[:200]}"
            elif report.complete:
                state = "Complete"
            else:
                state = f"Partial ({report.stop_reason})"
            embed.add_field(
                name=f"{report.category_name} (#{report.category_id})",
                value=(
                    f"{state}\n"
                    f"Pages: {report.pages} | +{report.reconcile.created} ~{report.reconcile.updated} "
                    f"-{report.reconcile.removed}\n"
                    f"Pairs: +{report.pairing.formed} -{report.pairing.dissolved} | "
                    f"Ranked: {report.points.ranked} | {report.duration:.1f}s"
                ),
                inline=False
            )
        return embed

    @app_commands.command(
        name="admin-sync",
        description="Run a sync cycle over every active category now (Owner only)"
    )
    async def admin_sync(self, interaction: discord.Interaction):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        await interaction.response.defer(ephemeral=True)
        if self.engine.is_running:
            await interaction.followup.send(embed=ErrorEmbeds.sync_in_progress(), ephemeral=True)
            return

        try:
            reports = await self._run_cycle()
            await interaction.followup.send(embed=self._report_embed(reports), ephemeral=True)
            self.logger.info(f"Manual sync executed by {interaction.user.id} ({interaction.user.name})")
        except Exception as e:
            self.logger.error(f"Manual sync error: {e}", exc_info=True)
            await interaction.followup.send(embed=ErrorEmbeds.command_error(str(e)), ephemeral=True)

    @app_commands.command(
        name="admin-sync-category",
        description="Sync a single category now (Owner only)"
    )
    @app_commands.describe(category_id="ID of the category to sync")
    async def admin_sync_category(self, interaction: discord.Interaction, category_id: int):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        await interaction.response.defer(ephemeral=True)
        category = await self.db.get_category(category_id)
        if category is None or not category.is_active:
            await interaction.followup.send(embed=ErrorEmbeds.category_not_found(str(category_id)), ephemeral=True)
            return

        try:
            reports = await self._run_cycle([category_id])
            await interaction.followup.send(embed=self._report_embed(reports), ephemeral=True)
        except Exception as e:
            self.logger.error(f"Category sync error: {e}", exc_info=True)
            await interaction.followup.send(embed=ErrorEmbeds.command_error(str(e)), ephemeral=True)

    @app_commands.command(
        name="admin-mark-proof",
        description="Record demo and/or video proof for an upstream entry (Owner only)"
    )
    @app_commands.describe(
        entry_id="Upstream entry id the proof belongs to",
        demo="Demo proof received",
        video="Video proof received"
    )
    async def admin_mark_proof(self, interaction: discord.Interaction, entry_id: str, demo: bool = False, video: bool = False):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        try:
            runs = await self.bot.proof_service.mark_proof(entry_id, demo=demo, video=video)
        except ValueError as e:
            await interaction.response.send_message(embed=ErrorEmbeds.invalid_input(str(e)), ephemeral=True)
            return
        except SyncException as e:
            await interaction.response.send_message(embed=ErrorEmbeds.sync_error(e), ephemeral=True)
            return

        await self.bot.leaderboard_service.clear_cache()
        proof = " and ".join(label for label, given in (("demo", demo), ("video", video)) if given)
        embed = discord.Embed(
            title=f"{UIConstants.DEMO_EMOJI} Proof Recorded",
            description=f"Marked {proof} for entry `{entry_id}` on {len(runs)} run(s).",
            color=UIConstants.SUCCESS_COLOR
        )
        await interaction.response.send_message(embed=embed, ephemeral=True)
        self.logger.info(f"Proof for entry {entry_id} recorded by {interaction.user.id}: demo={demo}, video={video}")

    @app_commands.command(
        name="admin-set-thresholds",
        description="Set how many top ranks require demo and video proof (Owner only)"
    )
    @app_commands.describe(category_id="Category ID", demo="Top N ranks requiring a demo", video="Top N ranks requiring a video")
    async def admin_set_thresholds(self, interaction: discord.Interaction, category_id: int, demo: int, video: int):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        try:
            category = await self.db.set_category_thresholds(category_id, demo, video)
        except ValueError as e:
            await interaction.response.send_message(embed=ErrorEmbeds.invalid_input(str(e)), ephemeral=True)
            return

        await interaction.response.send_message(
            embed=discord.Embed(
                title="✅ Thresholds Updated",
                description=(
                    f"**{category.name}** now requires a demo for the top **{demo}** and a video for the "
                    f"top **{video}** ranks. Flags update on the next sync."
                ),
                color=UIConstants.SUCCESS_COLOR
            ),
            ephemeral=True
        )
        self.logger.info(f"Thresholds for category {category_id} set to demo={demo}, video={video} by {interaction.user.id}")

    @app_commands.command(
        name="admin-ban-player",
        description="Ban or unban a player from ranking (Owner only)"
    )
    @app_commands.describe(external_id="Upstream player identity", banned="True to ban, False to lift the ban")
    async def admin_ban_player(self, interaction: discord.Interaction, external_id: str, banned: bool = True):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        try:
            player = await self.db.set_player_banned(external_id, banned)
        except ValueError:
            await interaction.response.send_message(embed=ErrorEmbeds.player_not_found(external_id), ephemeral=True)
            return

        action = "banned" if banned else "unbanned"
        await interaction.response.send_message(
            embed=discord.Embed(
                title=f"✅ Player {action.capitalize()}",
                description=f"**{player.display_name or external_id}** has been {action}. Ranks update on the next sync.",
                color=UIConstants.SUCCESS_COLOR
            ),
            ephemeral=True
        )
        self.logger.info(f"Player {external_id} {action} by {interaction.user.id}")

    @app_commands.command(
        name="admin-ban-run",
        description="Exclude or restore every run built from an upstream entry (Owner only)"
    )
    @app_commands.describe(entry_id="Upstream entry id", banned="True to exclude, False to restore")
    async def admin_ban_run(self, interaction: discord.Interaction, entry_id: str, banned: bool = True):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        try:
            runs = await self.db.set_run_banned(entry_id, banned)
        except ValueError as e:
            await interaction.response.send_message(embed=ErrorEmbeds.invalid_input(str(e)), ephemeral=True)
            return

        action = "excluded" if banned else "restored"
        await interaction.response.send_message(
            embed=discord.Embed(
                title="✅ Run Updated",
                description=f"{len(runs)} run(s) from entry `{entry_id}` {action}. Ranks update on the next sync.",
                color=UIConstants.SUCCESS_COLOR
            ),
            ephemeral=True
        )
        self.logger.info(f"Entry {entry_id} {action} by {interaction.user.id}")

    @app_commands.command(
        name="admin-set-category-active",
        description="Pause or resume syncing a category (Owner only)"
    )
    @app_commands.describe(category_id="Category ID", active="True to resume, False to pause")
    async def admin_set_category_active(self, interaction: discord.Interaction, category_id: int, active: bool):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        try:
            category = await self.db.set_category_active(category_id, active)
        except ValueError:
            await interaction.response.send_message(embed=ErrorEmbeds.category_not_found(str(category_id)), ephemeral=True)
            return

        state = "resumed" if active else "paused"
        await interaction.response.send_message(
            embed=discord.Embed(
                title="✅ Category Updated",
                description=f"Syncing of **{category.name}** {state}.",
                color=UIConstants.SUCCESS_COLOR
            ),
            ephemeral=True
        )
        self.logger.info(f"Category {category_id} {state} by {interaction.user.id}")

    @app_commands.command(
        name="admin-config-show",
        description="Show runtime configuration values under a prefix (Owner only)"
    )
    @app_commands.describe(prefix="Key prefix, e.g. sync, points, coop or avatar")
    async def admin_config_show(self, interaction: discord.Interaction, prefix: str):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        values = self.bot.config_service.get_by_category(prefix)
        if not values:
            await interaction.response.send_message(
                embed=ErrorEmbeds.invalid_input(f"No configuration keys under `{prefix}`."), ephemeral=True
            )
            return

        lines = [f"`{prefix}.{key}` = `{json.dumps(value)}`" for key, value in sorted(values.items())]
        await interaction.response.send_message(
            embed=discord.Embed(
                title=f"⚙️ Configuration: {prefix}",
                description="\n".join(lines)[:4000],
                color=UIConstants.DEFAULT_EMBED_COLOR
            ),
            ephemeral=True
        )

    @app_commands.command(
        name="admin-config-set",
        description="Set a runtime configuration value (Owner only)"
    )
    @app_commands.describe(key="Configuration key, e.g. sync.page_size", value="JSON value, e.g. 100 or \"split\"")
    async def admin_config_set(self, interaction: discord.Interaction, key: str, value: str):
        if not self._is_owner(interaction):
            await self._deny(interaction)
            return

        config = self.bot.config_service
        if key not in config.list_all():
            await interaction.response.send_message(
                embed=ErrorEmbeds.invalid_input(f"Unknown configuration key `{key}`."), ephemeral=True
            )
            return

        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            parsed = value

        await config.set(key, parsed, interaction.user.id)
        if key.startswith(RECOMPUTE_PREFIXES):
            await self.db.flag_all_for_recompute()
        if key == 'sync.interval_minutes':
            self.sync_cycle.change_interval(minutes=float(parsed))
        elif key == 'avatar.refresh_interval_hours':
            self.refresh_avatars.change_interval(hours=float(parsed))

        await interaction.response.send_message(
            embed=discord.Embed(
                title="✅ Configuration Updated",
                description=f"`{key}` = `{json.dumps(parsed)}`",
                color=UIConstants.SUCCESS_COLOR
            ),
            ephemeral=True
        )


async def setup(bot):
    await bot.add_cog(SyncCog(bot))
