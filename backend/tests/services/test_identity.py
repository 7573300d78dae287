from backend.app.db import models
from backend.app.db.session import session_scope
from backend.app.parsers._listing_common import RawListing
from backend.app.services.identity import IdentityResolver, VehicleSnapshot, resolve_identity


def _listing(**overrides) -> RawListing:
    values = dict(
        vendor_id="naniauto",
        source_url="https://naniauto.com/fr/details/p/1/x",
        make="Honda",
        model="Civic",
        year=2019,
        price=17495.0,
    )
    values.update(overrides)
    return RawListing(**values)


def _snapshot(id, vin=None, stock=None, make="Honda", model="Civic", year=2019, is_sold=False) -> VehicleSnapshot:
    return VehicleSnapshot(id=id, vin=vin, make=make, model=model, year=year, stock_number=stock, is_sold=is_sold)


def test_vin_match_wins_over_composite() -> None:
    resolver = IdentityResolver([_snapshot(1), _snapshot(2, vin="2HGFC2F59KH012345")])

    assert resolver.resolve(_listing(vin="2HGFC2F59KH012345")) == 2


def test_composite_match_is_case_insensitive_and_lowest_id_first() -> None:
    resolver = IdentityResolver([_snapshot(7), _snapshot(3)])

    assert resolver.resolve(_listing(make="HONDA", model="civic")) == 3
    assert resolver.resolve(_listing()) == 7
    assert resolver.resolve(_listing()) is None


def test_stock_number_breaks_composite_ties() -> None:
    resolver = IdentityResolver([_snapshot(1, stock="A1"), _snapshot(2, stock="B2")])

    assert resolver.resolve(_listing(stock_number="B2")) == 2


def test_listing_with_vin_only_falls_back_to_vinless_records() -> None:
    resolver = IdentityResolver([_snapshot(1, vin="1HGCV1F30LA012345")])

    assert resolver.resolve(_listing(vin="2HGFC2F59KH012345")) is None


def test_resolve_identity_against_database() -> None:
    with session_scope() as session:
        session.add(models.Vendor(id="naniauto", name="Nani Auto", source_type="html", adapter="B_DETAIL"))
        session.flush()
        first = models.Vehicle(vendor_id="naniauto", make="Honda", model="Civic", year=2019, images=[])
        second = models.Vehicle(
            vendor_id="naniauto", make="Honda", model="Civic", year=2019, vin="2HGFC2F59KH012345", images=[]
        )
        session.add_all([first, second])
        session.flush()
        first_id, second_id = first.id, second.id

    with session_scope() as session:
        assert resolve_identity(session, _listing(vin="2HGFC2F59KH012345"), "naniauto") == second_id
        assert resolve_identity(session, _listing(make="honda"), "naniauto") == first_id
        assert resolve_identity(session, _listing(), "other-vendor") is None


def test_sold_record_does_not_absorb_same_model_listing() -> None:
    resolver = IdentityResolver([_snapshot(1, stock="S1", is_sold=True), _snapshot(2, is_sold=True)])

    assert resolver.resolve(_listing(stock_number="N9")) is None
    assert resolver.resolve(_listing()) is None
    assert resolver.resolve(_listing(stock_number="S1")) == 1


def test_sold_record_still_matches_on_vin() -> None:
    resolver = IdentityResolver([_snapshot(4, vin="2HGFC2F59KH012345", is_sold=True)])

    assert resolver.resolve(_listing(vin="2HGFC2F59KH012345")) == 4


def test_resolve_identity_skips_sold_composite_matches() -> None:
    with session_scope() as session:
        session.add(models.Vendor(id="naniauto", name="Nani Auto", source_type="html", adapter="B_DETAIL"))
        session.flush()
        sold = models.Vehicle(
            vendor_id="naniauto", make="Honda", model="Civic", year=2019, vendor_stock_number="S1", is_sold=True, images=[]
        )
        session.add(sold)
        session.flush()
        sold_id = sold.id

    with session_scope() as session:
        assert resolve_identity(session, _listing(), "naniauto") is None
        assert resolve_identity(session, _listing(stock_number="S1"), "naniauto") == sold_id
