import logging, os, secrets, threading
from collections import Counter
from datetime import datetime

import psycopg2, psycopg2.extras
import pytz

from poll_catalog import BUSINESS_NAME, TAGLINES, get_options, get_poll

logger = logging.getLogger(__name__)

MIN_DEVICE_ID_LENGTH = 6
MAX_DEVICE_ID_LENGTH = 128
CUSTOM_TAGLINE_INDEX = -1
MAX_CUSTOM_TAGLINE_LENGTH = 120
UTC = pytz.utc


# --- Errors ---
class PollError(Exception):
    """Base for failures reported to the client as an HTTP status plus message."""
    status = 400
    message = "Invalid request"

    def __init__(self, message=None):
        if message:
            self.message = message
        super().__init__(self.message)


class InvalidDevice(PollError):
    message = "Invalid deviceId"


class DuplicateVote(PollError):
    status = 409
    message = "You already voted on this device. Thank you!"


class InvalidSelection(PollError):
    message = "Invalid selection"


class MissingCustomText(PollError):
    message = "Please enter your custom tagline"


class CustomTextTooLong(PollError):
    message = f"Custom tagline must be {MAX_CUSTOM_TAGLINE_LENGTH} characters or fewer"


class InvalidCustomText(PollError):
    message = "Custom tagline contains invalid characters"


class Unauthorized(PollError):
    status = 401
    message = "Unauthorized"


class StorageUnavailable(PollError):
    status = 500
    message = "DB connection error"


# --- Helpers ---
def _is_index(value):
    # bool is an int subclass; JSON true/false is not a selection
    return isinstance(value, int) and not isinstance(value, bool)


def pair_label(submission):
    name = get_options(BUSINESS_NAME)[submission["business_name_index"]]
    if submission["tagline_index"] == CUSTOM_TAGLINE_INDEX:
        tagline = f"Custom: {submission['custom_tagline']}"
    else:
        tagline = get_options(TAGLINES)[submission["tagline_index"]]
    return f"{name} + {tagline}"


def format_timestamp(value, tz):
    """Renders a stored timestamp in the display timezone, e.g. 19-10-2026 02:15:00 PM IST."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = UTC.localize(value)
    return value.astimezone(tz).strftime('%d-%m-%Y %I:%M:%S %p %Z')


def build_submission(data):
    """Validates a raw ballot payload and returns the submission to store.

    Raises InvalidSelection or one of the custom tagline errors. The device id is
    checked separately by submit_vote so duplicates are reported before bad selections.
    """
    business_name_index = data.get('businessNameIndex')
    tagline_index = data.get('taglineIndex')
    custom_tagline = data.get('customTagline')

    if not _is_index(business_name_index) or not 0 <= business_name_index < len(get_options(BUSINESS_NAME)):
        raise InvalidSelection("Invalid business name selection")

    # taglineIndex: 0..N-1, or -1 for a custom tagline
    if not _is_index(tagline_index) or not CUSTOM_TAGLINE_INDEX <= tagline_index < len(get_options(TAGLINES)):
        raise InvalidSelection("Invalid tagline selection")

    if tagline_index == CUSTOM_TAGLINE_INDEX:
        custom_tagline = custom_tagline.strip() if isinstance(custom_tagline, str) else ""
        if not custom_tagline:
            raise MissingCustomText()
        if len(custom_tagline) > MAX_CUSTOM_TAGLINE_LENGTH:
            raise CustomTextTooLong()
        # PostgreSQL text cannot hold NUL
        if "\x00" in custom_tagline:
            raise InvalidCustomText()
    else:
        custom_tagline = None

    return {
        "device_id": data.get('deviceId'),
        "business_name_index": business_name_index,
        "tagline_index": tagline_index,
        "custom_tagline": custom_tagline,
        "created_at": datetime.now(UTC),
    }


# --- Operations ---
def submit_vote(ledger, data):
    """Validates and records one combined vote. Returns the stored submission."""
    device_id = data.get('deviceId')
    if not isinstance(device_id, str) or not MIN_DEVICE_ID_LENGTH <= len(device_id) <= MAX_DEVICE_ID_LENGTH:
        raise InvalidDevice()
    if "\x00" in device_id:
        raise InvalidDevice()

    # The store checks for an earlier vote before building, so a repeat device
    # gets DuplicateVote even when its selections are also invalid.
    submission = ledger.record(device_id, lambda: build_submission(data))
    logger.info(f"Recorded vote for device {device_id}")
    return submission


def collect_results(ledger, key, admin_key, tz=UTC):
    """Returns the admin results payload, or raises Unauthorized."""
    if not key or not admin_key or not secrets.compare_digest(str(key).encode('utf-8'), str(admin_key).encode('utf-8')):
        raise Unauthorized()

    tallies = ledger.tallies()
    results = {}
    for poll_id in (BUSINESS_NAME, TAGLINES):
        poll = get_poll(poll_id)
        stored = tallies["options"].get(poll_id, {})
        poll["counts"] = [stored.get(i, 0) for i in range(len(poll["options"]))]
        results[poll_id] = poll

    pairs = sorted(tallies["pairs"].items(), key=lambda p: (-p[1], p[0]))
    results["pairSummary"] = [{"label": label, "count": count} for label, count in pairs]
    results["totalSubmissions"] = tallies["total"]
    results["lastSubmissionAt"] = format_timestamp(tallies["last_created_at"], tz)
    return results


# --- Stores ---
class MemoryLedger:
    """Process-local store. One lock guards submissions and tallies together."""

    def __init__(self):
        self._lock = threading.Lock()
        self._submissions = {}
        self._option_counts = {BUSINESS_NAME: Counter(), TAGLINES: Counter()}
        self._pair_counts = Counter()

    def record(self, device_id, build):
        """Stores build()'s submission for device_id and bumps its tallies; returns the submission."""
        with self._lock:
            if device_id in self._submissions:
                raise DuplicateVote()
            submission = build()
            label = pair_label(submission)
            self._submissions[device_id] = dict(submission)
            self._option_counts[BUSINESS_NAME][submission["business_name_index"]] += 1
            if submission["tagline_index"] >= 0:
                self._option_counts[TAGLINES][submission["tagline_index"]] += 1
            self._pair_counts[label] += 1
            return submission

    def tallies(self):
        with self._lock:
            return {
                "options": {poll_id: dict(c) for poll_id, c in self._option_counts.items()},
                "pairs": dict(self._pair_counts),
                "total": len(self._submissions),
                "last_created_at": max((s["created_at"] for s in self._submissions.values()), default=None),
            }


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS submissions (
    device_id TEXT PRIMARY KEY,
    business_name_index INTEGER NOT NULL,
    tagline_index INTEGER NOT NULL,
    custom_tagline TEXT,
    created_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS option_tallies (
    poll_id TEXT NOT NULL,
    option_index INTEGER NOT NULL,
    vote_count INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (poll_id, option_index)
);
CREATE TABLE IF NOT EXISTS pair_tallies (
    label TEXT PRIMARY KEY,
    vote_count INTEGER NOT NULL DEFAULT 0
);
"""

UPSERT_OPTION_SQL = """INSERT INTO option_tallies (poll_id, option_index, vote_count)
                       VALUES (%s, %s, 1)
                       ON CONFLICT (poll_id, option_index)
                       DO UPDATE SET vote_count = option_tallies.vote_count + 1"""

UPSERT_PAIR_SQL = """INSERT INTO pair_tallies (label, vote_count)
                     VALUES (%s, 1)
                     ON CONFLICT (label)
                     DO UPDATE SET vote_count = pair_tallies.vote_count + 1"""


class PostgresLedger:
    """PostgreSQL store. The submissions primary key is the single-vote guarantee."""

    def __init__(self, dsn=None):
        self.dsn = dsn

    def get_db(self):
        """Opens a connection from DATABASE_URL, or the DB_* variables when no DSN was given."""
        try:
            if self.dsn:
                return psycopg2.connect(self.dsn)
            return psycopg2.connect(
                dbname=os.getenv("DB_NAME"),
                user=os.getenv("DB_USER"),
                password=os.getenv("DB_PASSWORD"),
                host=os.getenv("DB_HOST"),
                port=os.getenv("DB_PORT")
            )
        except psycopg2.OperationalError as e:
            logger.error(f"Error connecting to PostgreSQL database: {e}")
            raise StorageUnavailable()

    def init_schema(self):
        conn = self.get_db()
        try:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    def record(self, device_id, build):
        """Looks up, inserts and bumps tallies on one connection in one transaction."""
        conn = self.get_db()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 FROM submissions WHERE device_id=%s", (device_id,))
                if cur.fetchone() is not None:
                    raise DuplicateVote()
                submission = build()
                label = pair_label(submission)
                cur.execute("""INSERT INTO submissions
                                   (device_id, business_name_index, tagline_index, custom_tagline, created_at)
                               VALUES (%s, %s, %s, %s, %s)
                               ON CONFLICT (device_id) DO NOTHING""",
                            (device_id, submission["business_name_index"],
                             submission["tagline_index"], submission["custom_tagline"],
                             submission["created_at"]))
                if cur.rowcount == 0:
                    # Another request for this device committed after the lookup.
                    raise DuplicateVote()
                cur.execute(UPSERT_OPTION_SQL, (BUSINESS_NAME, submission["business_name_index"]))
                if submission["tagline_index"] >= 0:
                    cur.execute(UPSERT_OPTION_SQL, (TAGLINES, submission["tagline_index"]))
                cur.execute(UPSERT_PAIR_SQL, (label,))
            conn.commit()
            return submission
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def tallies(self):
        conn = self.get_db()
        try:
            # One snapshot so the counts agree with the total.
            conn.set_session(isolation_level="REPEATABLE READ", readonly=True)
            with conn.cursor(cursor_factory=psycopg2.extras.DictCursor) as cur:
                cur.execute("SELECT poll_id, option_index, vote_count FROM option_tallies")
                options = {}
                for r in cur.fetchall():
                    options.setdefault(r['poll_id'], {})[r['option_index']] = r['vote_count']

                cur.execute("SELECT label, vote_count FROM pair_tallies")
                pairs = {r['label']: r['vote_count'] for r in cur.fetchall()}

                cur.execute("SELECT COUNT(*) AS total, MAX(created_at) AS last_created_at FROM submissions")
                row = cur.fetchone()
            conn.commit()
            return {
                "options": options,
                "pairs": pairs,
                "total": row['total'],
                "last_created_at": row['last_created_at'],
            }
        finally:
            conn.close()


def build_ledger(dsn=None):
    """PostgreSQL when DATABASE_URL or DB_NAME is configured, otherwise in-memory."""
    if dsn or os.getenv("DB_NAME"):
        logger.info("Using PostgreSQL submission ledger")
        return PostgresLedger(dsn)
    logger.info("No database configured; using in-memory submission ledger")
    return MemoryLedger()
