"""
每日奖励与一次性奖励。

每日奖励：
- 距上次领取满 24 小时（或首次领取）才可领取，否则 AlreadyClaimed
- 距上次领取在 [24h, 48h) 内连签 +1，超过 48h 重置为 1
- 基础奖励记 daily_login，连签达到 7 / 30 天时另记一条 streak_bonus
- 领取经由账本的原子单元串行化，同一账户并发领取只有一次成功

一次性奖励（注册、完善资料、首次分享）每个账户最多发放一次。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from marketcore.database import get_db
from marketcore.models.schemas import CREDIT, UNIT_CREDITS, DailyReward, Transaction, from_row
from marketcore.services.errors import AlreadyClaimed
from marketcore.services.ledger import LedgerStore, LedgerUnit
from marketcore.services.platform_config import get_int

logger = logging.getLogger(__name__)

CLAIM_INTERVAL = timedelta(hours=24)
STREAK_WINDOW = timedelta(hours=48)

# 连签天数 → 奖励配置键
STREAK_MILESTONES = {7: "streak_bonus_7", 30: "streak_bonus_30"}

# 一次性奖励来源 → 金额配置键
ONE_TIME_BONUSES = {
    "signup_bonus": "signup_bonus",
    "profile_complete": "profile_complete_bonus",
    "prompt_share": "first_share_bonus",
}

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class DailyClaim:
    granted: bool
    amount: int
    new_streak: int
    streak_bonus: int = 0
    transactions: list[Transaction] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "granted": self.granted,
            "amount": self.amount,
            "new_streak": self.new_streak,
            "streak_bonus": self.streak_bonus,
            "transaction_ids": [t.transaction_id for t in self.transactions],
        }


class RewardService:
    """每日奖励与一次性奖励服务。"""

    def __init__(self, ledger: LedgerStore | None = None):
        self.ledger = ledger or LedgerStore()

    @staticmethod
    def _load_state(u: LedgerUnit, account_id: str) -> DailyReward | None:
        row = u.conn.execute(
            "SELECT * FROM daily_rewards WHERE account_id = ?", (account_id,)
        ).fetchone()
        return from_row(DailyReward, row)

    def claim_daily(self, account_id: str, now: datetime | None = None) -> DailyClaim:
        """
        领取每日奖励。

        Raises:
            AlreadyClaimed: 距上次领取不足 24 小时。
        """
        now = (now or datetime.now()).replace(microsecond=0)
        base = get_int("daily_base_reward")
        milestones = {days: get_int(key) for days, key in STREAK_MILESTONES.items()}

        def _claim(u: LedgerUnit) -> DailyClaim:
            state = self._load_state(u, account_id)
            last = (
                datetime.strptime(state.last_claim_at, _TS_FORMAT)
                if state and state.last_claim_at else None
            )
            if last is not None and now - last < CLAIM_INTERVAL:
                next_at = (last + CLAIM_INTERVAL).strftime(_TS_FORMAT)
                raise AlreadyClaimed(f"今日奖励已领取，下次可领取时间 {next_at}")

            if last is not None and now - last < STREAK_WINDOW:
                new_streak = state.current_streak + 1
            else:
                new_streak = 1

            txns = [u.apply(account_id, CREDIT, base, "daily_login", unit=UNIT_CREDITS,
                            description=f"每日登录奖励，连签 {new_streak} 天")]
            bonus = milestones.get(new_streak, 0)
            if bonus > 0:
                txns.append(u.apply(account_id, CREDIT, bonus, "streak_bonus", unit=UNIT_CREDITS,
                                    description=f"连签 {new_streak} 天奖励"))

            longest = max(state.longest_streak if state else 0, new_streak)
            total_days = (state.total_days_claimed if state else 0) + 1
            u.conn.execute(
                """INSERT INTO daily_rewards
                   (account_id, last_claim_at, current_streak, longest_streak,
                    total_days_claimed, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(account_id) DO UPDATE SET
                       last_claim_at = excluded.last_claim_at,
                       current_streak = excluded.current_streak,
                       longest_streak = excluded.longest_streak,
                       total_days_claimed = excluded.total_days_claimed,
                       updated_at = excluded.updated_at""",
                (account_id, now.strftime(_TS_FORMAT), new_streak, longest,
                 total_days, u.timestamp),
            )
            return DailyClaim(
                granted=True,
                amount=base + bonus,
                new_streak=new_streak,
                streak_bonus=bonus,
                transactions=txns,
            )

        claim = self.ledger.run_atomic([account_id], _claim, now=now)
        logger.info("每日奖励已发放: account=%s, amount=%d, streak=%d",
                    account_id, claim.amount, claim.new_streak)
        return claim

    def get_daily_status(self, account_id: str, now: datetime | None = None) -> dict:
        """
        查询每日奖励状态。

        连签是否中断在读取时计算：距上次领取已满 48 小时则 streak_active 为 False。
        """
        now = (now or datetime.now()).replace(microsecond=0)
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM daily_rewards WHERE account_id = ?", (account_id,)
            ).fetchone()
        finally:
            db.close()

        state = from_row(DailyReward, row)
        if not state or not state.last_claim_at:
            return {
                "eligible": True,
                "current_streak": 0,
                "streak_active": False,
                "longest_streak": 0,
                "total_days_claimed": 0,
                "next_claim_at": None,
            }

        last = datetime.strptime(state.last_claim_at, _TS_FORMAT)
        streak_active = now - last < STREAK_WINDOW
        return {
            "eligible": now - last >= CLAIM_INTERVAL,
            "current_streak": state.current_streak if streak_active else 0,
            "streak_active": streak_active,
            "longest_streak": state.longest_streak,
            "total_days_claimed": state.total_days_claimed,
            "next_claim_at": (last + CLAIM_INTERVAL).strftime(_TS_FORMAT),
        }

    # ── 一次性奖励 ────────────────────────────────────────

    def grant_one_time_bonus(self, account_id: str, source: str) -> Transaction | None:
        """
        发放一次性奖励；该来源已发放过则返回 None。

        是否已发放在原子单元内检查，并发调用也只会发放一次。
        """
        if source not in ONE_TIME_BONUSES:
            raise ValueError(f"不支持的一次性奖励: {source}")
        amount = get_int(ONE_TIME_BONUSES[source])
        if amount <= 0:
            return None

        def _grant(u: LedgerUnit) -> Transaction | None:
            row = u.conn.execute(
                "SELECT 1 FROM transactions WHERE account_id = ? AND source = ? LIMIT 1",
                (account_id, source),
            ).fetchone()
            if row:
                return None
            return u.apply(account_id, CREDIT, amount, source, unit=UNIT_CREDITS)

        txn = self.ledger.run_atomic([account_id], _grant)
        if txn:
            logger.info("一次性奖励已发放: account=%s, source=%s, amount=%d",
                        account_id, source, amount)
        return txn

    def grant_signup_bonus(self, account_id: str) -> Transaction | None:
        return self.grant_one_time_bonus(account_id, "signup_bonus")

    def grant_profile_complete_bonus(self, account_id: str) -> Transaction | None:
        return self.grant_one_time_bonus(account_id, "profile_complete")

    def grant_first_share_bonus(self, account_id: str) -> Transaction | None:
        return self.grant_one_time_bonus(account_id, "prompt_share")
