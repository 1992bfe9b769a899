import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from analytics import select_entries, totals_by_category
from config import get_settings
from database import SessionLocal, session_scope
from insights import build_period_report
from models import Category, NotificationKind, TransactionType, User
from notifications import EmailMessage, EmailRenderer, Mailer, build_mailer
from periods import Period, local_now, month_start
from services import (
    NotificationLogService,
    SqlLedger,
    TransactionService,
    UserService,
)


logger = logging.getLogger(__name__)

ACHIEVEMENT_MILESTONES = (1, 10, 50)
REPORT_MIN_TRANSACTIONS = 5
REPORT_DAYS = 15
INACTIVE_DAYS = 30


class RateLimiter:
    """Spaces calls to :meth:`wait` at least ``interval_secs`` apart across threads."""

    def __init__(
        self,
        interval_secs: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.interval_secs = interval_secs
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_at: Optional[float] = None

    def wait(self) -> None:
        with self._lock:
            now = self._clock()
            if self._next_at is not None and self._next_at > now:
                self._sleep(self._next_at - now)
                now = self._next_at
            self._next_at = now + self.interval_secs


def _utc_naive(value: datetime) -> datetime:
    # stored timestamps are naive UTC
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def report_scope(today: date) -> str:
    half = "A" if today.day < 15 else "B"
    return f"{today:%Y-%m}-{half}"


def week_scope(today: date) -> str:
    iso_year, iso_week, _ = today.isocalendar()
    return f"{iso_year:04d}-W{iso_week:02d}"


class NotificationJobs:
    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        mailer: Optional[Mailer] = None,
        renderer: Optional[EmailRenderer] = None,
        clock: Optional[Callable[[], datetime]] = None,
        *,
        workers: Optional[int] = None,
        send_interval_secs: Optional[float] = None,
        alert_income_ratio: Optional[float] = None,
        suppress_duplicate_alerts: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self.session_factory = session_factory
        self.mailer = mailer or build_mailer(settings)
        self.renderer = renderer or EmailRenderer(frontend_url=settings.frontend_url)
        self.clock = clock or local_now
        self.workers = workers if workers is not None else settings.report_workers
        self.rate_limiter = RateLimiter(
            send_interval_secs
            if send_interval_secs is not None
            else settings.send_interval_secs
        )
        self.alert_income_ratio = (
            alert_income_ratio
            if alert_income_ratio is not None
            else settings.alert_income_ratio
        )
        self.suppress_duplicate_alerts = (
            suppress_duplicate_alerts
            if suppress_duplicate_alerts is not None
            else settings.suppress_duplicate_alerts
        )

    def today(self) -> date:
        return self.clock().date()

    # -- plumbing ------------------------------------------------------------

    def _recipients(self) -> list[int]:
        with session_scope(self.session_factory) as session:
            return [u.id for u in UserService(session).notification_recipients()]

    def _fan_out(self, job: str, user_ids: list[int], fn: Callable[[int], int]) -> int:
        sent = 0
        if self.workers <= 1:
            for user_id in user_ids:
                sent += self._guarded(job, user_id, fn)
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                futures = [
                    pool.submit(self._guarded, job, user_id, fn) for user_id in user_ids
                ]
                for future in as_completed(futures):
                    sent += future.result()
        logger.info(f"job_run: job={job} users={len(user_ids)} sent={sent}")
        return sent

    def _guarded(self, job: str, user_id: int, fn: Callable[[int], int]) -> int:
        try:
            return fn(user_id)
        except Exception:
            logger.exception(f"job_failed: job={job} user_id={user_id}")
            return 0

    def _send_claimed(
        self,
        session: Session,
        user: User,
        kind: NotificationKind,
        scope: str,
        message: EmailMessage,
    ) -> bool:
        log = NotificationLogService(session)
        if not log.claim(user.id, kind, scope):
            logger.info(
                f"notification_skipped: kind={kind.value} user_id={user.id} scope={scope}"
            )
            return False
        self.rate_limiter.wait()
        try:
            self.mailer.send(message)
        except Exception:
            log.release(user.id, kind, scope)
            raise
        return True

    # -- jobs ----------------------------------------------------------------

    def run_biweekly_reports(self) -> int:
        return self._fan_out("biweekly_reports", self._recipients(), self.send_report)

    def send_report(self, user_id: int) -> int:
        today = self.today()
        scope = report_scope(today)
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                return 0
            if TransactionService(session, user.id).count() < REPORT_MIN_TRANSACTIONS:
                return 0
            if NotificationLogService(session).already_sent(
                user.id, NotificationKind.biweekly_report, scope
            ):
                return 0
            window = Period(
                "report", today - timedelta(days=2 * REPORT_DAYS - 1), today
            )
            entries = SqlLedger(session).list_transactions(user.id, window)
            report = build_period_report(entries, today, days=REPORT_DAYS)
            message = self.renderer.biweekly_report(user, report)
            sent = self._send_claimed(
                session, user, NotificationKind.biweekly_report, scope, message
            )
            return int(sent)

    def run_spending_alerts(self) -> int:
        return self._fan_out(
            "spending_alerts", self._recipients(), self.send_spending_alerts
        )

    def send_spending_alerts(self, user_id: int) -> int:
        today = self.today()
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None or user.monthly_income_cents <= 0:
                return 0
            limit = user.monthly_income_cents * self.alert_income_ratio
            entries = SqlLedger(session).list_transactions(
                user.id, Period("month_to_date", month_start(today), today)
            )
            totals = totals_by_category(
                select_entries(entries, type=TransactionType.expense),
                TransactionType.expense,
            )
            category_ids = {e.category: e.category_id for e in entries if e.is_expense}
            log = NotificationLogService(session)
            sent = 0
            for name in sorted(totals):
                spent = totals[name].total_cents
                if spent <= limit:
                    continue
                category = session.get(Category, category_ids[name])
                scope = f"{category.id}:{today:%Y-%m}"
                message = self.renderer.spending_alert(user, category, spent)
                if self.suppress_duplicate_alerts:
                    if self._send_claimed(
                        session, user, NotificationKind.spending_alert, scope, message
                    ):
                        sent += 1
                    continue
                self.rate_limiter.wait()
                self.mailer.send(message)
                log.record(user.id, NotificationKind.spending_alert, scope)
                sent += 1
            return sent

    def run_achievements(self) -> int:
        return self._fan_out("achievements", self._recipients(), self.send_achievements)

    def send_achievements(self, user_id: int) -> int:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                return 0
            count = TransactionService(session, user.id).count()
            log = NotificationLogService(session)
            sent = 0
            for milestone in ACHIEVEMENT_MILESTONES:
                if count < milestone:
                    break
                scope = f"milestone-{milestone}"
                if log.already_sent(user.id, NotificationKind.achievement, scope):
                    continue
                message = self.renderer.achievement(user, milestone)
                if self._send_claimed(
                    session, user, NotificationKind.achievement, scope, message
                ):
                    sent += 1
            return sent

    def run_reengagement(self) -> int:
        return self._fan_out("reengagement", self._recipients(), self.send_reengagement)

    def send_reengagement(self, user_id: int) -> int:
        now = _utc_naive(self.clock())
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                return 0
            last_seen = user.last_login_at or user.created_at
            if last_seen is None or now - last_seen <= timedelta(days=INACTIVE_DAYS):
                return 0
            message = self.renderer.reengagement(user, (now - last_seen).days)
            sent = self._send_claimed(
                session,
                user,
                NotificationKind.reengagement,
                week_scope(now.date()),
                message,
            )
            return int(sent)

    def send_welcome(self, user_id: int) -> int:
        return self._guarded("welcome", user_id, self._send_welcome)

    def _send_welcome(self, user_id: int) -> int:
        with session_scope(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                return 0
            message = self.renderer.welcome(user)
            return int(
                self._send_claimed(
                    session, user, NotificationKind.welcome, "signup", message
                )
            )
