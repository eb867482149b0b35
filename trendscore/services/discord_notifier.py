import logging
from typing import Optional
import httpx
from trendscore.models import BatchReport, MatchPassReport, MergeResult
from trendscore.config import settings

logger = logging.getLogger(__name__)

FOOTER = {"text": "Trend Score Engine"}


class DiscordNotifier:
    """Send operator notifications to Discord via webhook"""

    def __init__(self, webhook_url: Optional[str] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.discord_webhook_url

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def _post(self, embed: dict) -> bool:
        payload = {
            "embeds": [embed],
            "username": "Trend Score Engine"
        }

        async with httpx.AsyncClient() as client:
            response = await client.post(
                self.webhook_url,
                json=payload,
                timeout=10
            )

        if response.status_code == 204:
            return True
        logger.error(f"Discord webhook failed: {response.status_code}")
        return False

    async def send_recalculation_summary(
        self,
        report: BatchReport,
        match_report: Optional[MatchPassReport] = None
    ) -> bool:
        """Send summary of a daily recalculation run"""

        if not self.enabled:
            logger.warning("Discord webhook URL not configured")
            return False

        try:
            description = (
                f"Recalculated **{report.recalculated}** products\n"
                f"Updated: **{report.updated}**\n"
                f"Errors: **{len(report.errors)}**\n"
                f"History rows pruned: **{report.history_pruned}**"
            )
            if match_report is not None:
                description += (
                    f"\nDuplicates merged: **{match_report.merged}** "
                    f"(of {match_report.checked} checked)"
                )

            embed = {
                "title": "📊 Daily Score Update",
                "description": description,
                "color": 0xFF6B35 if report.errors else 0x4ECDC4,
                "fields": [],
                "footer": FOOTER,
                "timestamp": report.finished_at.isoformat() if report.finished_at else None
            }

            for item in report.errors[:5]:
                embed["fields"].append({
                    "name": f"⚠️ {item.product_id or 'batch'}",
                    "value": item.error[:1000],
                    "inline": False
                })

            sent = await self._post(embed)
            if sent:
                logger.info("Discord notification sent successfully")
            return sent

        except Exception as e:
            logger.error(f"Error sending Discord notification: {e}")
            return False

    async def send_merge_failure(self, result: MergeResult) -> bool:
        """Alert an operator that a merge failed mid-way"""

        if not self.enabled:
            return False

        try:
            embed = {
                "title": "🚨 Product Merge Failed",
                "description": (
                    f"Merging `{result.duplicate_id}` into `{result.target_id}` failed:\n\n"
                    f"```{result.message}```\n"
                    "Check both records for a partial merge."
                ),
                "color": 0xFF0000,
                "footer": FOOTER
            }
            return await self._post(embed)

        except Exception as e:
            logger.error(f"Error sending merge failure notification: {e}")
            return False

    async def send_error_notification(self, error_message: str) -> bool:
        """Send error notification"""

        if not self.enabled:
            return False

        try:
            embed = {
                "title": "⚠️ Score Update Error",
                "description": f"An error occurred during the score update:\n\n```{error_message}```",
                "color": 0xFF0000,
                "footer": FOOTER
            }
            return await self._post(embed)

        except Exception as e:
            logger.error(f"Error sending error notification: {e}")
            return False
