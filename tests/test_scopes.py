"""Tests for DispatchScope values and descriptions."""

from dispatch.scopes import DISPATCH_SCOPE_DESCRIPTIONS, DispatchScope


class TestDispatchScopeValues:
    def test_farmer_scopes(self):
        assert DispatchScope.READ == "bookings:read"
        assert DispatchScope.WRITE == "bookings:write"
        assert DispatchScope.CANCEL == "bookings:cancel"
        assert DispatchScope.PAY == "bookings:pay"

    def test_supplier_scopes(self):
        assert DispatchScope.OFFERS == "bookings:offers"
        assert DispatchScope.FULFIL == "bookings:fulfil"

    def test_dispute_scope(self):
        assert DispatchScope.DISPUTE == "disputes:raise"

    def test_admin_scopes(self):
        assert DispatchScope.ADMIN == "admin:bookings"
        assert DispatchScope.ADMIN_READ == "admin:bookings:read"
        assert DispatchScope.ADMIN_WRITE == "admin:bookings:write"
        assert DispatchScope.ADMIN_DELETE == "admin:bookings:delete"
        assert DispatchScope.ADMIN_DISPUTES == "admin:disputes"

    def test_all_scopes_are_strings(self):
        for scope in DispatchScope:
            assert isinstance(scope, str)


class TestDispatchScopeDescriptions:
    def test_every_scope_but_admin_super_has_description(self):
        for scope in DispatchScope:
            if scope is DispatchScope.ADMIN:
                continue
            assert scope in DISPATCH_SCOPE_DESCRIPTIONS

    def test_all_description_values_are_non_empty_strings(self):
        for key, value in DISPATCH_SCOPE_DESCRIPTIONS.items():
            assert isinstance(key, str)
            assert isinstance(value, str)
            assert len(value) > 0
