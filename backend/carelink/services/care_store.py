import hashlib
import hmac
import logging
import secrets
import sqlite3
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from carelink import config
from carelink.errors import InvalidStateError, NotFoundError, ValidationError
from carelink.models import (
    Booking,
    BookingLocation,
    BookingStatusChange,
    EligibleProvider,
    EmergencyContact,
    EscrowTransaction,
    IncidentRecord,
    ProviderProfile,
    ProviderSkill,
    Review,
    ServiceCategory,
    UserAccount,
    VerificationDocument,
)
from carelink.services.geo_index import GeoIndex, SqliteRTreeGeoIndex
from carelink.services.trust_score import TrustScoreInputs

logger = logging.getLogger(__name__)

ELIGIBILITY_CHUNK_SIZE = 500
BOOKING_MUTABLE_COLUMNS = {"provider_id", "cancellation_reason", "incident_reported"}
ESCROW_MUTABLE_COLUMNS = {
    "order_id",
    "payment_id",
    "currency",
    "gross_minor",
    "platform_fee_minor",
    "provider_payout_minor",
}

SEED_CATEGORIES = [
    ("cat_hospital_attendant", "hospital-attendant", "Hospital Attendant"),
    ("cat_elder_care", "elder-care-companion", "Elder Care Companion"),
    ("cat_post_surgery", "post-surgery-companion", "Post-Surgery Companion"),
    ("cat_child_care", "child-care-companion", "Child Care Companion"),
]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_password(password: str, *, iterations: int = config.PASSWORD_HASH_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"pbkdf2_sha256${iterations}${salt.hex()}${digest.hex()}"


def password_matches(password: str, stored: Optional[str]) -> bool:
    if not stored:
        return False
    try:
        scheme, iterations, salt_hex, digest_hex = stored.split("$")
        if scheme != "pbkdf2_sha256":
            return False
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


def minor_to_decimal(value: Optional[int]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(int(value)).scaleb(-2)


@dataclass
class EscrowUpdate:
    """A conditional escrow write: applied only if state and version still match."""

    expected_state: str
    expected_version: int
    to_state: str
    changes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CareStore:
    db_path: str
    geo_index: Optional[GeoIndex] = None
    timeout: float = config.DB_TIMEOUT_SECONDS
    seed_demo_data: bool = False
    demo_password: Optional[str] = None

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        if self.geo_index is None:
            self.geo_index = SqliteRTreeGeoIndex(self.db_path, timeout=self.timeout)
        self._init_db()
        self._seed_categories()
        if self.seed_demo_data:
            self._seed_demo_data()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        role TEXT NOT NULL,
                        full_name TEXT NOT NULL,
                        phone TEXT NOT NULL DEFAULT '',
                        is_active INTEGER NOT NULL DEFAULT 1,
                        emergency_name TEXT,
                        emergency_phone TEXT,
                        emergency_relation TEXT,
                        password_hash TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_profiles (
                        user_id TEXT PRIMARY KEY,
                        latitude REAL,
                        longitude REAL,
                        is_available INTEGER NOT NULL DEFAULT 1,
                        years_experience INTEGER NOT NULL DEFAULT 0,
                        response_time_min REAL,
                        trust_score REAL NOT NULL DEFAULT 0,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_categories (
                        id TEXT PRIMARY KEY,
                        slug TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_skills (
                        provider_id TEXT NOT NULL,
                        service_category_id TEXT NOT NULL,
                        is_verified INTEGER NOT NULL DEFAULT 0,
                        skill_trust_score REAL NOT NULL DEFAULT 0,
                        PRIMARY KEY (provider_id, service_category_id)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_provider_skills_category
                    ON provider_skills (service_category_id, is_verified)
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        customer_id TEXT NOT NULL,
                        provider_id TEXT,
                        service_category_id TEXT NOT NULL,
                        care_recipient_name TEXT NOT NULL,
                        location_lat REAL NOT NULL,
                        location_lng REAL NOT NULL,
                        location_address TEXT,
                        scheduled_date TEXT NOT NULL,
                        notes TEXT,
                        status TEXT NOT NULL,
                        payment_status TEXT NOT NULL DEFAULT 'PENDING',
                        incident_reported INTEGER NOT NULL DEFAULT 0,
                        cancellation_reason TEXT,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_provider ON bookings (provider_id)")
                conn.execute("CREATE INDEX IF NOT EXISTS idx_bookings_customer ON bookings (customer_id)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS booking_status_history (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS provider_response_samples (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        booking_id TEXT NOT NULL,
                        minutes REAL NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL UNIQUE,
                        provider_id TEXT NOT NULL,
                        customer_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS verification_documents (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        document_type TEXT NOT NULL,
                        storage_key TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        rejection_reason TEXT,
                        reviewed_by TEXT,
                        created_at TEXT NOT NULL,
                        reviewed_at TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS escrow_transactions (
                        booking_id TEXT PRIMARY KEY,
                        order_id TEXT NOT NULL UNIQUE,
                        payment_id TEXT,
                        currency TEXT NOT NULL,
                        gross_minor INTEGER NOT NULL,
                        platform_fee_minor INTEGER,
                        provider_payout_minor INTEGER,
                        state TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS processed_payment_signals (
                        order_id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        gateway_status TEXT NOT NULL,
                        payment_id TEXT,
                        processed_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS incidents (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        triggered_by TEXT NOT NULL,
                        triggered_by_user_id TEXT NOT NULL,
                        reason TEXT,
                        previous_status TEXT NOT NULL,
                        emergency_number TEXT NOT NULL,
                        contact_notified INTEGER NOT NULL,
                        party_notified INTEGER NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                self._ensure_column(conn, "users", "password_hash", "TEXT")
                conn.commit()

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str) -> None:
        columns = conn.execute(f"PRAGMA table_info({table})").fetchall()
        if column in {row["name"] for row in columns}:
            return
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _seed_categories(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "INSERT OR IGNORE INTO service_categories (id, slug, name, is_active) VALUES (?, ?, ?, 1)",
                    SEED_CATEGORIES,
                )
                conn.commit()

    def _seed_demo_data(self) -> None:
        if self.get_user("cust_demo_1"):
            return
        self.add_user(
            user_id="cust_demo_1",
            role="customer",
            full_name="Nimali Perera",
            phone="+94771000001",
            emergency_name="Sunil Perera",
            emergency_phone="+94771000099",
            emergency_relation="Son",
            password=self.demo_password,
        )
        self.add_user(user_id="admin_demo_1", role="admin", full_name="CareLink Admin", password=self.demo_password)
        seed_providers = [
            ("prov_demo_1", "Kamala Silva", 6.9271, 79.8612, 6, 86.5),
            ("prov_demo_2", "Ruwan Fernando", 6.9147, 79.8730, 3, 78.0),
            ("prov_demo_3", "Dilani Jayasinghe", 6.8868, 79.8590, 9, 91.2),
            ("prov_demo_4", "Ashan Wickramasinghe", 6.9497, 79.8780, 1, 64.0),
        ]
        for provider_id, name, lat, lng, years, trust in seed_providers:
            self.add_provider(
                provider_id=provider_id,
                full_name=name,
                phone="",
                latitude=lat,
                longitude=lng,
                years_experience=years,
                password=self.demo_password,
            )
            for slug in ("hospital-attendant", "elder-care-companion"):
                self.grant_skill(provider_id, slug, verified=True)
            self.set_provider_trust_score(provider_id, trust)

    # Users and providers

    def _row_to_user(self, row: sqlite3.Row) -> UserAccount:
        return UserAccount(
            id=row["id"],
            role=row["role"],
            full_name=row["full_name"],
            phone=row["phone"] or "",
            is_active=bool(row["is_active"]),
        )

    def add_user(
        self,
        *,
        role: str,
        full_name: str,
        phone: str = "",
        user_id: Optional[str] = None,
        emergency_name: Optional[str] = None,
        emergency_phone: Optional[str] = None,
        emergency_relation: Optional[str] = None,
        password: Optional[str] = None,
    ) -> UserAccount:
        if role not in {"customer", "provider", "admin"}:
            raise ValidationError("Invalid role. Allowed: customer, provider, admin")
        if not full_name.strip():
            raise ValidationError("Full name is required")
        if password is not None and len(password) < config.PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters")
        user = UserAccount(
            id=user_id or f"u_{uuid4().hex[:10]}",
            role=role,  # type: ignore[arg-type]
            full_name=full_name.strip(),
            phone=phone.strip(),
            is_active=True,
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, role, full_name, phone, is_active,
                        emergency_name, emergency_phone, emergency_relation, password_hash, created_at
                    ) VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?, ?)
                    """,
                    (
                        user.id,
                        user.role,
                        user.full_name,
                        user.phone,
                        emergency_name,
                        emergency_phone,
                        emergency_relation,
                        hash_password(password) if password is not None else None,
                        utc_now(),
                    ),
                )
                conn.commit()
        return user

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def set_password(self, user_id: str, password: str) -> None:
        if len(password) < config.PASSWORD_MIN_LENGTH:
            raise ValidationError(f"Password must be at least {config.PASSWORD_MIN_LENGTH} characters")
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("UPDATE users SET password_hash = ? WHERE id = ?", (hash_password(password), user_id))
                conn.commit()
        if cursor.rowcount != 1:
            raise NotFoundError("User not found", {"user_id": user_id})

    def authenticate(self, user_id: str, password: str) -> Optional[UserAccount]:
        """The active user whose stored password matches, otherwise None."""
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row or not row["is_active"]:
            return None
        if not password_matches(password, row["password_hash"]):
            return None
        return self._row_to_user(row)

    def set_user_active(self, user_id: str, is_active: bool) -> None:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (int(is_active), user_id))
                if cursor.rowcount == 0:
                    raise NotFoundError("User not found", {"user_id": user_id})
                conn.commit()

    def get_emergency_contact(self, customer_id: str) -> EmergencyContact:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT emergency_name, emergency_phone, emergency_relation FROM users WHERE id = ?",
                (customer_id,),
            ).fetchone()
        if not row:
            raise NotFoundError("Customer not found", {"customer_id": customer_id})
        return EmergencyContact(
            has_emergency_contact=bool(row["emergency_phone"]),
            emergency_name=row["emergency_name"] or None,
            emergency_phone=row["emergency_phone"] or None,
            emergency_relation=row["emergency_relation"] or None,
        )

    def update_emergency_contact(self, customer_id: str, name: str, phone: str, relation: str) -> EmergencyContact:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE users SET emergency_name = ?, emergency_phone = ?, emergency_relation = ?
                    WHERE id = ? AND role = 'customer'
                    """,
                    (name.strip(), phone.strip(), relation.strip(), customer_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Customer not found", {"customer_id": customer_id})
                conn.commit()
        return self.get_emergency_contact(customer_id)

    def add_provider(
        self,
        *,
        full_name: str,
        phone: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        years_experience: int = 0,
        is_available: bool = True,
        provider_id: Optional[str] = None,
        password: Optional[str] = None,
    ) -> ProviderProfile:
        if years_experience < 0:
            raise ValidationError("years_experience must be >= 0")
        if (latitude is None) != (longitude is None):
            raise ValidationError("Latitude and longitude must be set together")
        user = self.add_user(role="provider", full_name=full_name, phone=phone, user_id=provider_id, password=password)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO provider_profiles (user_id, latitude, longitude, is_available, years_experience, trust_score, updated_at)
                    VALUES (?, ?, ?, ?, ?, 0, ?)
                    """,
                    (user.id, latitude, longitude, int(is_available), years_experience, utc_now()),
                )
                conn.commit()
        if latitude is not None and longitude is not None:
            self.geo_index.upsert(user.id, latitude, longitude)
        return self._require_provider(user.id)

    def _require_provider(self, provider_id: str) -> ProviderProfile:
        provider = self.get_provider(provider_id)
        if not provider:
            raise NotFoundError("Provider not found", {"provider_id": provider_id})
        return provider

    def get_provider(self, provider_id: str) -> Optional[ProviderProfile]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT u.id, u.full_name, u.phone, u.is_active, p.*
                FROM users u JOIN provider_profiles p ON p.user_id = u.id
                WHERE u.id = ? AND u.role = 'provider'
                """,
                (provider_id,),
            ).fetchone()
            if not row:
                return None
            skill_rows = conn.execute(
                """
                SELECT c.slug, ps.is_verified, ps.skill_trust_score
                FROM provider_skills ps JOIN service_categories c ON c.id = ps.service_category_id
                WHERE ps.provider_id = ?
                ORDER BY c.slug
                """,
                (provider_id,),
            ).fetchall()
        return ProviderProfile(
            id=row["id"],
            full_name=row["full_name"],
            phone=row["phone"] or "",
            is_active=bool(row["is_active"]),
            is_available=bool(row["is_available"]),
            latitude=row["latitude"],
            longitude=row["longitude"],
            years_experience=int(row["years_experience"]),
            response_time_min=row["response_time_min"],
            trust_score=float(row["trust_score"]),
            skills=[
                ProviderSkill(
                    service_category_slug=skill["slug"],
                    is_verified=bool(skill["is_verified"]),
                    skill_trust_score=float(skill["skill_trust_score"]),
                )
                for skill in skill_rows
            ],
        )

    def update_provider_location(self, provider_id: str, latitude: float, longitude: float) -> ProviderProfile:
        self._require_provider(provider_id)
        # Index first: a failed index write must not leave a position the matcher cannot see.
        self.geo_index.upsert(provider_id, latitude, longitude)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE provider_profiles SET latitude = ?, longitude = ?, updated_at = ? WHERE user_id = ?",
                    (latitude, longitude, utc_now(), provider_id),
                )
                conn.commit()
        return self._require_provider(provider_id)

    def set_provider_availability(self, provider_id: str, is_available: bool) -> ProviderProfile:
        self._require_provider(provider_id)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE provider_profiles SET is_available = ?, updated_at = ? WHERE user_id = ?",
                    (int(is_available), utc_now(), provider_id),
                )
                conn.commit()
        return self._require_provider(provider_id)

    def grant_skill(self, provider_id: str, slug: str, *, verified: bool = False) -> ProviderProfile:
        self._require_provider(provider_id)
        category = self.require_category(slug)
        with self._lock:
            with self._connect() as conn:
                trust_row = conn.execute(
                    "SELECT trust_score FROM provider_profiles WHERE user_id = ?", (provider_id,)
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO provider_skills (provider_id, service_category_id, is_verified, skill_trust_score)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(provider_id, service_category_id) DO UPDATE SET is_verified = MAX(is_verified, excluded.is_verified)
                    """,
                    (provider_id, category.id, int(verified), float(trust_row["trust_score"])),
                )
                conn.commit()
        return self._require_provider(provider_id)

    def verify_skill(self, provider_id: str, slug: str) -> ProviderProfile:
        self._require_provider(provider_id)
        category = self.require_category(slug)
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE provider_skills SET is_verified = 1 WHERE provider_id = ? AND service_category_id = ?",
                    (provider_id, category.id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Provider has not applied for this skill", {"provider_id": provider_id, "slug": slug})
                conn.commit()
        return self._require_provider(provider_id)

    def is_verified_for_category(self, provider_id: str, category_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM provider_skills ps
                JOIN users u ON u.id = ps.provider_id
                WHERE ps.provider_id = ? AND ps.service_category_id = ? AND ps.is_verified = 1
                  AND u.role = 'provider' AND u.is_active = 1
                """,
                (provider_id, category_id),
            ).fetchone()
        return row is not None

    def list_eligible_providers(self, category_id: str, provider_ids: Iterable[str]) -> Dict[str, EligibleProvider]:
        """Which of ``provider_ids`` may be matched for a category, keyed by id.

        Callers pass the spatial index hits, so only nearby rows are read.
        """
        ids = list(dict.fromkeys(provider_ids))
        eligible: Dict[str, EligibleProvider] = {}
        with self._connect() as conn:
            for start in range(0, len(ids), ELIGIBILITY_CHUNK_SIZE):
                chunk = ids[start : start + ELIGIBILITY_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                rows = conn.execute(
                    f"""
                    SELECT u.id, u.full_name, ps.skill_trust_score, p.years_experience
                    FROM provider_skills ps
                    JOIN users u ON u.id = ps.provider_id
                    JOIN provider_profiles p ON p.user_id = u.id
                    WHERE ps.service_category_id = ?
                      AND u.id IN ({placeholders})
                      AND ps.is_verified = 1
                      AND u.role = 'provider'
                      AND u.is_active = 1
                      AND p.is_available = 1
                      AND p.latitude IS NOT NULL
                      AND p.longitude IS NOT NULL
                    """,
                    (category_id, *chunk),
                ).fetchall()
                for row in rows:
                    eligible[row["id"]] = EligibleProvider(
                        provider_id=row["id"],
                        full_name=row["full_name"],
                        trust_score=float(row["skill_trust_score"]),
                        years_experience=int(row["years_experience"]),
                    )
        return eligible

    def set_provider_trust_score(self, provider_id: str, trust_score: float) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE provider_profiles SET trust_score = ?, updated_at = ? WHERE user_id = ?",
                    (trust_score, utc_now(), provider_id),
                )
                conn.execute(
                    "UPDATE provider_skills SET skill_trust_score = ? WHERE provider_id = ?",
                    (trust_score, provider_id),
                )
                conn.commit()

    def trust_score_inputs(self, provider_id: str) -> Optional[TrustScoreInputs]:
        with self._connect() as conn:
            profile = conn.execute(
                """
                SELECT p.response_time_min FROM provider_profiles p
                JOIN users u ON u.id = p.user_id
                WHERE p.user_id = ? AND u.role = 'provider'
                """,
                (provider_id,),
            ).fetchone()
            if not profile:
                return None
            bookings = conn.execute(
                """
                SELECT COUNT(*) AS total, SUM(CASE WHEN status = 'COMPLETED' THEN 1 ELSE 0 END) AS completed
                FROM bookings WHERE provider_id = ?
                """,
                (provider_id,),
            ).fetchone()
            rating = conn.execute(
                "SELECT AVG(rating) AS average, COUNT(*) AS total FROM reviews WHERE provider_id = ?",
                (provider_id,),
            ).fetchone()
            documents = conn.execute(
                """
                SELECT COUNT(*) AS total, SUM(CASE WHEN status = 'VERIFIED' THEN 1 ELSE 0 END) AS approved
                FROM verification_documents WHERE provider_id = ?
                """,
                (provider_id,),
            ).fetchone()
        return TrustScoreInputs(
            completed_bookings=int(bookings["completed"] or 0),
            total_bookings=int(bookings["total"] or 0),
            average_rating=float(rating["average"]) if rating["total"] else None,
            approved_documents=int(documents["approved"] or 0),
            total_documents=int(documents["total"] or 0),
            median_response_minutes=profile["response_time_min"],
        )

    def record_response_sample(self, provider_id: str, booking_id: str, minutes: float) -> float:
        """Store one response time and refresh the provider's median. Returns the new median."""
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO provider_response_samples (id, provider_id, booking_id, minutes, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (f"rs_{uuid4().hex[:10]}", provider_id, booking_id, max(0.0, minutes), utc_now()),
                )
                samples = [
                    float(row["minutes"])
                    for row in conn.execute(
                        "SELECT minutes FROM provider_response_samples WHERE provider_id = ?", (provider_id,)
                    ).fetchall()
                ]
                median = statistics.median(samples)
                conn.execute(
                    "UPDATE provider_profiles SET response_time_min = ?, updated_at = ? WHERE user_id = ?",
                    (median, utc_now(), provider_id),
                )
                conn.commit()
        return median

    # Categories

    def get_category_by_slug(self, slug: str) -> Optional[ServiceCategory]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM service_categories WHERE slug = ?", (slug,)).fetchone()
        if not row:
            return None
        return ServiceCategory(id=row["id"], slug=row["slug"], name=row["name"], is_active=bool(row["is_active"]))

    def require_category(self, slug: str) -> ServiceCategory:
        category = self.get_category_by_slug(slug)
        if not category:
            raise NotFoundError(f"Service category not found with slug: {slug}", {"service_category_slug": slug})
        return category

    def add_category(self, slug: str, name: str, *, is_active: bool = True) -> ServiceCategory:
        category = ServiceCategory(id=f"cat_{uuid4().hex[:10]}", slug=slug, name=name, is_active=is_active)
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO service_categories (id, slug, name, is_active) VALUES (?, ?, ?, ?)",
                    (category.id, category.slug, category.name, int(category.is_active)),
                )
                conn.commit()
        return category

    # Bookings

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            customer_id=row["customer_id"],
            provider_id=row["provider_id"],
            service_category_id=row["service_category_id"],
            service_category_slug=row["slug"],
            care_recipient_name=row["care_recipient_name"],
            location=BookingLocation(
                lat=row["location_lat"],
                lng=row["location_lng"],
                address=row["location_address"],
            ),
            scheduled_date=row["scheduled_date"],
            notes=row["notes"],
            status=row["status"],
            payment_status=row["payment_status"],
            incident_reported=bool(row["incident_reported"]),
            cancellation_reason=row["cancellation_reason"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch_booking(self, conn: sqlite3.Connection, booking_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(
            """
            SELECT b.*, c.slug FROM bookings b
            JOIN service_categories c ON c.id = b.service_category_id
            WHERE b.id = ?
            """,
            (booking_id,),
        ).fetchone()

    def _insert_history(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, utc_now()),
        )

    def insert_booking(
        self,
        *,
        customer_id: str,
        category: ServiceCategory,
        care_recipient_name: str,
        location: BookingLocation,
        scheduled_date: str,
        notes: Optional[str],
    ) -> Booking:
        booking_id = f"bk_{uuid4().hex[:12]}"
        now = utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO bookings (
                        id, customer_id, service_category_id, care_recipient_name,
                        location_lat, location_lng, location_address, scheduled_date, notes,
                        status, payment_status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', 'PENDING', ?, ?)
                    """,
                    (
                        booking_id,
                        customer_id,
                        category.id,
                        care_recipient_name,
                        location.lat,
                        location.lng,
                        location.address,
                        scheduled_date,
                        notes,
                        now,
                        now,
                    ),
                )
                self._insert_history(conn, booking_id, customer_id, "none", "PENDING", "booking requested")
                conn.commit()
                return self._row_to_booking(self._fetch_booking(conn, booking_id))

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._connect() as conn:
            row = self._fetch_booking(conn, booking_id)
        return self._row_to_booking(row) if row else None

    def list_bookings(self, user_id: Optional[str] = None, role: Optional[str] = None) -> List[Booking]:
        allowed_roles = {None, "all", "customer", "provider"}
        normalized_role = role.strip().lower() if role else None
        if normalized_role not in allowed_roles:
            raise ValidationError("Invalid role value. Allowed: all, customer, provider")

        query = "SELECT b.*, c.slug FROM bookings b JOIN service_categories c ON c.id = b.service_category_id"
        params: List[Any] = []
        if user_id and normalized_role == "provider":
            query += " WHERE b.provider_id = ?"
            params.append(user_id)
        elif user_id and normalized_role == "customer":
            query += " WHERE b.customer_id = ?"
            params.append(user_id)
        elif user_id:
            query += " WHERE b.customer_id = ? OR b.provider_id = ?"
            params.extend([user_id, user_id])
        query += " ORDER BY b.created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def booking_history(self, booking_id: str) -> List[BookingStatusChange]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
                (booking_id,),
            ).fetchall()
        return [
            BookingStatusChange(
                id=row["id"],
                booking_id=row["booking_id"],
                actor_user_id=row["actor_user_id"],
                from_status=row["from_status"],
                to_status=row["to_status"],
                note=row["note"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def compare_and_set_booking(
        self,
        booking_id: str,
        *,
        expected_status: str,
        expected_version: int,
        to_status: str,
        actor_user_id: str,
        note: str = "",
        changes: Optional[Dict[str, Any]] = None,
    ) -> Booking:
        """Move a booking to ``to_status`` only if nobody changed it since it was read.

        Raises InvalidStateError when the stored status or version no longer
        matches; the row is left untouched in that case.
        """
        changes = dict(changes or {})
        unknown = set(changes) - BOOKING_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported booking columns: {sorted(unknown)}")

        assignments = ["status = ?", "version = version + 1", "updated_at = ?"]
        values: List[Any] = [to_status, utc_now()]
        for column, value in changes.items():
            assignments.append(f"{column} = ?")
            values.append(int(value) if isinstance(value, bool) else value)

        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"UPDATE bookings SET {', '.join(assignments)} WHERE id = ? AND status = ? AND version = ?",
                    (*values, booking_id, expected_status, expected_version),
                )
                if cursor.rowcount != 1:
                    current = self._fetch_booking(conn, booking_id)
                    if not current:
                        raise NotFoundError("Booking not found", {"booking_id": booking_id})
                    raise InvalidStateError(
                        f"Invalid status transition: {current['status']} -> {to_status}",
                        {
                            "booking_id": booking_id,
                            "current_status": current["status"],
                            "expected_status": expected_status,
                        },
                    )
                self._insert_history(conn, booking_id, actor_user_id, expected_status, to_status, note)
                conn.commit()
                updated = self._fetch_booking(conn, booking_id)
        logger.info("booking_transition id=%s %s->%s actor=%s", booking_id, expected_status, to_status, actor_user_id)
        return self._row_to_booking(updated)

    # Reviews and verification documents

    def add_review(self, *, booking: Booking, rating: int, comment: str) -> Review:
        review = Review(
            id=f"rv_{uuid4().hex[:10]}",
            booking_id=booking.id,
            provider_id=booking.provider_id or "",
            customer_id=booking.customer_id,
            rating=rating,
            comment=comment,
            created_at=utc_now(),
        )
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO reviews (id, booking_id, provider_id, customer_id, rating, comment, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            review.id,
                            review.booking_id,
                            review.provider_id,
                            review.customer_id,
                            review.rating,
                            review.comment,
                            review.created_at,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise InvalidStateError("Booking already reviewed", {"booking_id": booking.id}) from exc
                conn.commit()
        return review

    def _row_to_document(self, row: sqlite3.Row) -> VerificationDocument:
        return VerificationDocument(
            id=row["id"],
            provider_id=row["provider_id"],
            document_type=row["document_type"],
            storage_key=row["storage_key"],
            status=row["status"],
            rejection_reason=row["rejection_reason"],
            reviewed_by=row["reviewed_by"],
            created_at=row["created_at"],
            reviewed_at=row["reviewed_at"],
        )

    def add_verification_document(self, provider_id: str, document_type: str, storage_key: str) -> VerificationDocument:
        self._require_provider(provider_id)
        document_id = f"doc_{uuid4().hex[:10]}"
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO verification_documents (id, provider_id, document_type, storage_key, status, created_at)
                    VALUES (?, ?, ?, ?, 'PENDING', ?)
                    """,
                    (document_id, provider_id, document_type, storage_key, utc_now()),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM verification_documents WHERE id = ?", (document_id,)).fetchone()
        return self._row_to_document(row)

    def review_verification_document(
        self,
        document_id: str,
        *,
        status: str,
        reviewer_id: str,
        rejection_reason: Optional[str] = None,
    ) -> VerificationDocument:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE verification_documents
                    SET status = ?, rejection_reason = ?, reviewed_by = ?, reviewed_at = ?
                    WHERE id = ? AND status = 'PENDING'
                    """,
                    (status, rejection_reason, reviewer_id, utc_now(), document_id),
                )
                row = conn.execute("SELECT * FROM verification_documents WHERE id = ?", (document_id,)).fetchone()
                if not row:
                    raise NotFoundError("Verification document not found", {"document_id": document_id})
                if cursor.rowcount != 1:
                    raise InvalidStateError(
                        f"Document already reviewed: {row['status']}",
                        {"document_id": document_id, "current_status": row["status"]},
                    )
                conn.commit()
        return self._row_to_document(row)

    # Escrow

    def _row_to_escrow(self, row: sqlite3.Row) -> EscrowTransaction:
        return EscrowTransaction(
            booking_id=row["booking_id"],
            order_id=row["order_id"],
            payment_id=row["payment_id"],
            currency=row["currency"],
            gross_amount=minor_to_decimal(row["gross_minor"]),
            platform_fee=minor_to_decimal(row["platform_fee_minor"]),
            provider_payout=minor_to_decimal(row["provider_payout_minor"]),
            state=row["state"],
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def get_escrow(self, booking_id: str) -> Optional[EscrowTransaction]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_escrow(row) if row else None

    def get_escrow_by_order(self, order_id: str) -> Optional[EscrowTransaction]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM escrow_transactions WHERE order_id = ?", (order_id,)).fetchone()
        return self._row_to_escrow(row) if row else None

    def escrow_gross_minor(self, booking_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute("SELECT gross_minor FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
        return int(row["gross_minor"]) if row else None

    def create_escrow(self, *, booking_id: str, order_id: str, currency: str, gross_minor: int) -> EscrowTransaction:
        now = utc_now()
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO escrow_transactions (booking_id, order_id, currency, gross_minor, state, version, created_at, updated_at)
                        VALUES (?, ?, ?, ?, 'PENDING', 1, ?, ?)
                        """,
                        (booking_id, order_id, currency, gross_minor, now, now),
                    )
                except sqlite3.IntegrityError as exc:
                    raise InvalidStateError("Payment already initiated for booking", {"booking_id": booking_id}) from exc
                conn.execute(
                    "UPDATE bookings SET payment_status = 'PENDING', updated_at = ? WHERE id = ?",
                    (now, booking_id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_escrow(row)

    def _apply_escrow_update(self, conn: sqlite3.Connection, booking_id: str, update: EscrowUpdate) -> None:
        unknown = set(update.changes) - ESCROW_MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported escrow columns: {sorted(unknown)}")
        now = utc_now()
        assignments = ["state = ?", "version = version + 1", "updated_at = ?"]
        values: List[Any] = [update.to_state, now]
        for column, value in update.changes.items():
            assignments.append(f"{column} = ?")
            values.append(value)
        cursor = conn.execute(
            f"UPDATE escrow_transactions SET {', '.join(assignments)} WHERE booking_id = ? AND state = ? AND version = ?",
            (*values, booking_id, update.expected_state, update.expected_version),
        )
        if cursor.rowcount != 1:
            current = conn.execute("SELECT state FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
            if not current:
                raise NotFoundError("Escrow transaction not found", {"booking_id": booking_id})
            raise InvalidStateError(
                f"Invalid escrow transition: {current['state']} -> {update.to_state}",
                {"booking_id": booking_id, "current_state": current["state"], "expected_state": update.expected_state},
            )
        conn.execute(
            "UPDATE bookings SET payment_status = ?, updated_at = ? WHERE id = ?",
            (update.to_state, now, booking_id),
        )

    def compare_and_set_escrow(self, booking_id: str, update: EscrowUpdate) -> EscrowTransaction:
        with self._lock:
            with self._connect() as conn:
                self._apply_escrow_update(conn, booking_id, update)
                conn.commit()
                row = conn.execute("SELECT * FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
        logger.info("escrow_transition booking=%s %s->%s", booking_id, update.expected_state, update.to_state)
        return self._row_to_escrow(row)

    def processed_signal_booking_id(self, order_id: str) -> Optional[str]:
        """Booking id of an already processed order reference, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT booking_id FROM processed_payment_signals WHERE order_id = ?", (order_id,)
            ).fetchone()
        return str(row["booking_id"]) if row else None

    def record_payment_signal(
        self,
        *,
        order_id: str,
        booking_id: str,
        gateway_status: str,
        payment_id: Optional[str],
        update: EscrowUpdate,
    ) -> Tuple[bool, EscrowTransaction]:
        """Mark ``order_id`` processed and apply ``update`` in one transaction.

        Returns ``(False, escrow)`` without touching anything when the order
        reference was already processed.
        """
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        """
                        INSERT INTO processed_payment_signals (order_id, booking_id, gateway_status, payment_id, processed_at)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (order_id, booking_id, gateway_status, payment_id, utc_now()),
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    row = conn.execute("SELECT * FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
                    return False, self._row_to_escrow(row)
                self._apply_escrow_update(conn, booking_id, update)
                conn.commit()
                row = conn.execute("SELECT * FROM escrow_transactions WHERE booking_id = ?", (booking_id,)).fetchone()
        logger.info(
            "payment_signal order=%s booking=%s status=%s %s->%s",
            order_id,
            booking_id,
            gateway_status,
            update.expected_state,
            update.to_state,
        )
        return True, self._row_to_escrow(row)

    # Incidents

    def insert_incident(self, incident: IncidentRecord) -> IncidentRecord:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO incidents (
                        id, booking_id, triggered_by, triggered_by_user_id, reason, previous_status,
                        emergency_number, contact_notified, party_notified, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        incident.id,
                        incident.booking_id,
                        incident.triggered_by,
                        incident.triggered_by_user_id,
                        incident.reason,
                        incident.previous_status,
                        incident.emergency_number,
                        int(incident.contact_notified),
                        int(incident.party_notified),
                        incident.created_at,
                    ),
                )
                conn.commit()
        return incident

    def list_incidents(self, booking_id: Optional[str] = None) -> List[IncidentRecord]:
        query = "SELECT * FROM incidents"
        params: Iterable[Any] = ()
        if booking_id:
            query += " WHERE booking_id = ?"
            params = (booking_id,)
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [
            IncidentRecord(
                id=row["id"],
                booking_id=row["booking_id"],
                triggered_by=row["triggered_by"],
                triggered_by_user_id=row["triggered_by_user_id"],
                reason=row["reason"],
                previous_status=row["previous_status"],
                emergency_number=row["emergency_number"],
                contact_notified=bool(row["contact_notified"]),
                party_notified=bool(row["party_notified"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]


care_store = CareStore(
    db_path=config.DB_PATH,
    seed_demo_data=config.SEED_DEMO_DATA,
    demo_password=config.DEMO_PASSWORD or None,
)
