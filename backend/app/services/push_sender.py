import logging
from threading import Lock
from typing import Any, Dict, List, Optional

from app.config import settings

logger = logging.getLogger(__name__)

_INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


class PushSender:
    """Firebase Cloud Messaging fan-out. Disabled unless credentials are configured."""

    def __init__(self, credentials_path: Optional[str] = None):
        self._credentials_path = (credentials_path if credentials_path is not None else settings.firebase_credentials_path).strip()
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
            if not self._credentials_path:
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
                cred = credentials.Certificate(self._credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except Exception:
                self._enabled = False
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, Any],
    ) -> List[str]:
        """Send one multicast message; returns tokens the backend reported as dead."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        message = self._messaging.MulticastMessage(
            notification=self._messaging.Notification(title=title, body=body),
            tokens=tokens,
            data={key: "" if value is None else str(value) for key, value in data.items()},
        )
        batch = self._messaging.send_each_for_multicast(message)
        invalid: List[str] = []
        for idx, response in enumerate(batch.responses):
            if response.success:
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if any(marker in error_text for marker in _INVALID_TOKEN_MARKERS):
                invalid.append(tokens[idx])
        return invalid


push_sender = PushSender()
