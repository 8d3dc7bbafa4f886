"""Application-wide configuration loaded from environment variables."""

import os

from dotenv import load_dotenv

load_dotenv()

# Redis
REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379")

# ── Activity Signal ──────────────────────────────────────────────────────

# Hours after the 24h same-day window during which a report still extends
# the streak instead of resetting it.
STREAK_GRACE_HOURS: int = int(os.getenv("STREAK_GRACE_HOURS", "24"))
STREAK_MILESTONES: tuple = (7, 14, 30, 50, 100)

# ── Progression Engine ───────────────────────────────────────────────────

CURSE_ANXIETY_HOURS: int = int(os.getenv("CURSE_ANXIETY_HOURS", "48"))
CURSE_WEAKNESS_HOURS: int = int(os.getenv("CURSE_WEAKNESS_HOURS", "72"))
CURSE_CURSED_HOURS: int = int(os.getenv("CURSE_CURSED_HOURS", "168"))  # 7 days

# ── Energy Ledger ────────────────────────────────────────────────────────

BASE_ENERGY_PER_REPORT: int = int(os.getenv("BASE_ENERGY_PER_REPORT", "10"))
LUCKY_BONUS_CHANCE: float = float(os.getenv("LUCKY_BONUS_CHANCE", "0.05"))
LUCKY_BONUS_MULTIPLIER: int = int(os.getenv("LUCKY_BONUS_MULTIPLIER", "10"))

# ── Escalation ───────────────────────────────────────────────────────────

ESCALATION_SUMMARY_MIN_MEMBERS: int = int(os.getenv("ESCALATION_SUMMARY_MIN_MEMBERS", "3"))
ESCALATION_TOP_N: int = int(os.getenv("ESCALATION_TOP_N", "5"))

# "tier_entry" notifies once per tier entry (re-reminding after the cooldown);
# "every_run" re-sends on every scheduled scan.
ESCALATION_REPEAT_POLICY: str = os.getenv("ESCALATION_REPEAT_POLICY", "tier_entry")
ESCALATION_COOLDOWN_HOURS: int = int(os.getenv("ESCALATION_COOLDOWN_HOURS", "24"))

# Pause between dispatches to stay under chat/push rate limits
DISPATCH_DELAY_SECONDS: float = float(os.getenv("DISPATCH_DELAY_SECONDS", "0"))
NOTIFICATION_CHANNEL: str = os.getenv("NOTIFICATION_CHANNEL", "engagement:notifications")

# ── Report submission ────────────────────────────────────────────────────

PROFILE_WRITE_MAX_ATTEMPTS: int = int(os.getenv("PROFILE_WRITE_MAX_ATTEMPTS", "3"))

# ── Server Configuration ─────────────────────────────────────────────────

SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))

# Bearer token required by the cron endpoint; empty disables the check
CRON_SECRET: str = os.getenv("CRON_SECRET", "")
