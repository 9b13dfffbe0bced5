"""Unit tests for the abandoned cart sweep script."""

from datetime import timedelta
from unittest.mock import patch
from uuid import uuid4

import pytest

from marketplace.core.database import utc_now
from marketplace.models import Cart, CartStatus
from scripts import sweep_abandoned_carts


class TestSweepScript:
    def test_sweeps_expired_carts(self, session_factory, cache, make_cart, db_session) -> None:
        stale = make_cart(user_id=uuid4())
        stale.expires_at = utc_now() - timedelta(hours=2)
        db_session.commit()

        with (
            patch.object(sweep_abandoned_carts, "get_session_factory", return_value=session_factory),
            patch.object(sweep_abandoned_carts, "get_cache", return_value=cache),
        ):
            sweep_abandoned_carts.main()

        db_session.expire_all()
        assert db_session.get(Cart, stale.id).status == CartStatus.ABANDONED

    def test_exits_non_zero_on_failure(self) -> None:
        with patch.object(sweep_abandoned_carts, "get_session_factory", side_effect=RuntimeError("no database")):
            with pytest.raises(SystemExit) as exc_info:
                sweep_abandoned_carts.main()

        assert exc_info.value.code == 1
