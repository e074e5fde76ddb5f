import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import List

from carelink import config

logger = logging.getLogger(__name__)


@dataclass
class PushDelivery:
    sent: int = 0
    failed: int = 0
    invalid_tokens: List[str] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.sent > 0


class PushSender:
    """Firebase Cloud Messaging client, initialised on first use.

    Without FIREBASE_CREDENTIALS_PATH the sender stays disabled and every
    send reports zero deliveries.
    """

    def __init__(self, credentials_path: str = config.FIREBASE_CREDENTIALS_PATH, timeout: float = config.PUSH_TIMEOUT_SECONDS):
        self.credentials_path = credentials_path
        self.timeout = timeout
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if not self.credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                self._initialized = True
                self._enabled = False
                logger.exception("Push sender disabled: firebase-admin import failed")
                return

            try:
                cred = credentials.Certificate(self.credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred, {"httpTimeout": self.timeout})
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except (ValueError, OSError):
                self._enabled = False
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: dict[str, str],
    ) -> PushDelivery:
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return PushDelivery()
        assert self._messaging is not None
        try:
            message = self._messaging.MulticastMessage(
                notification=self._messaging.Notification(title=title, body=body),
                tokens=tokens,
                data=data,
            )
            batch = self._messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push send failed")
            return PushDelivery(failed=len(tokens))

        delivery = PushDelivery(sent=batch.success_count, failed=batch.failure_count)
        for idx, response in enumerate(batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text:
                delivery.invalid_tokens.append(tokens[idx])
        return delivery


push_sender = PushSender()
