"""Download token issuance and redemption."""

import logging
import secrets
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from marketplace.core.config import Settings, get_settings
from marketplace.core.database import utc_now
from marketplace.core.errors import ForbiddenError, GoneError, NotFoundError
from marketplace.models.catalog import ProductFile
from marketplace.models.download_token import DownloadToken
from marketplace.models.order import OrderItem
from marketplace.schemas.download import DownloadResponse
from marketplace.services.file_storage import FileStorage, get_file_storage

logger = logging.getLogger(__name__)


def generate_token() -> str:
    """192 bits of entropy; collisions are not retried."""
    return secrets.token_urlsafe(24)


class EntitlementService:
    """Service for issuing and redeeming download tokens."""

    def __init__(
        self,
        db: Session,
        storage: FileStorage | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or get_settings()
        self.storage = storage or get_file_storage()

    def issue(self, order_item: OrderItem, user_id: UUID, now: datetime | None = None) -> DownloadToken:
        """Add a fresh token for ``order_item`` to the current transaction.

        The caller owns the transaction; nothing is committed here.
        """
        issued_at = now or utc_now()
        token = DownloadToken(
            token=generate_token(),
            order_item_id=order_item.id,
            user_id=user_id,
            expires_at=issued_at + timedelta(days=self.settings.download_token_expiry_days),
            max_downloads=self.settings.download_max_downloads,
            download_count=0,
            is_active=True,
        )
        self.db.add(token)
        return token

    def redeem(self, token: str, caller_ip: str | None) -> DownloadResponse:
        """Consume one download from a token and return a signed file location.

        The count check and the increment happen in one conditional UPDATE, so
        concurrent redemptions can never push ``download_count`` past the limit.

        Raises:
            NotFoundError: Unknown or deactivated token, or no file for the product.
            GoneError: Token expired.
            ForbiddenError: Download limit reached.
            StorageNotConfiguredError: No file storage to presign against.
        """
        record = self._get_token(token)
        now = utc_now()
        self._check_usable(record, now)

        order_item = self.db.get(OrderItem, record.order_item_id)
        if order_item is None:
            raise NotFoundError("Download link not found or invalid token")
        target = self._resolve_file(order_item.product_id, order_item.variant_id)
        # Presigning fails before a download is spent
        file_location = self.storage.signed_url(target.file_key, target.file_name)

        consumed = self.db.execute(
            update(DownloadToken)
            .where(
                DownloadToken.id == record.id,
                DownloadToken.is_active.is_(True),
                DownloadToken.expires_at > now,
                DownloadToken.download_count < DownloadToken.max_downloads,
            )
            .values(download_count=DownloadToken.download_count + 1, ip_address=caller_ip)
            .execution_options(synchronize_session=False)
        ).rowcount

        if not consumed:
            # Lost a race with another redemption or a refund; report the state that stopped us
            self.db.rollback()
            self.db.refresh(record)
            self._check_usable(record, now)
            raise ForbiddenError("Download limit reached")

        self.db.commit()
        logger.info(
            "Download %d/%d for token %s (order item %s) from %s",
            record.download_count + 1,
            record.max_downloads,
            record.id,
            order_item.id,
            caller_ip,
        )
        return DownloadResponse(
            file_location=file_location,
            file_name=target.file_name,
            mime_type=target.mime_type,
            size=target.file_size,
        )

    def _get_token(self, token: str) -> DownloadToken:
        record = self.db.scalars(
            select(DownloadToken)
            .where(DownloadToken.token == token)
            .execution_options(populate_existing=True)
        ).first()
        if record is None or not record.is_active:
            raise NotFoundError("Download link not found or invalid token")
        return record

    @staticmethod
    def _check_usable(record: DownloadToken, now: datetime) -> None:
        if not record.is_active:
            raise NotFoundError("Download link not found or invalid token")
        if record.expires_at <= now:
            raise GoneError("This download link has expired")
        if record.download_count >= record.max_downloads:
            raise ForbiddenError("Download limit reached")

    def _resolve_file(self, product_id: UUID, variant_id: UUID | None) -> ProductFile:
        """Variant file first, then the product's base file, then any file of the product."""
        files = list(
            self.db.scalars(
                select(ProductFile)
                .where(ProductFile.product_id == product_id)
                .order_by(ProductFile.created_at, ProductFile.id)
            )
        )
        if variant_id:
            for f in files:
                if f.variant_id == variant_id:
                    return f
        for f in files:
            if f.variant_id is None:
                return f
        if files:
            return files[0]
        raise NotFoundError("No downloadable file found for this product")
