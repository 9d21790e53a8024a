import io

import pytest
from sqlalchemy import func, select, text

from app.campsite.db import session_scope
from app.campsite.errors import AuthorizationError, NotFoundError, ValidationError
from app.campsite.models import AuditEvent, User
from app.campsite.modules.listings import admin as listing_admin
from app.campsite.modules.listings import service as listing_service
from app.campsite.modules.listings.models import Listing, ListingImage
from app.campsite.modules.listings.service import (
    create_listing,
    delete_listing,
    list_listings,
    map_feed,
    update_listing,
    validate_listing_payload,
)
from app.campsite.modules.reviews.models import Review
from app.campsite.modules.reviews.service import create_review
from app.campsite.storage import StoredAsset

from conftest import FakeAssetStore, FakeGeocoder, create_listing_via_http, make_user, signed_in_client

PAYLOAD = {"title": "Pine Flats", "location": "Boulder, CO", "price": "20", "description": "Shady sites"}


class BrokenGeocoder:
    def lookup(self, query):
        from app.campsite.geocoding import GeocodingError

        raise GeocodingError("down")


def _users(app, *emails):
    ids = [make_user(app, e) for e in emails]
    return ids


def test_validate_listing_payload():
    assert validate_listing_payload(PAYLOAD) == []
    errors = validate_listing_payload({"title": "", "location": "x", "price": "-1"})
    assert "Title is required." in errors
    assert "Price must be at least 0." in errors
    assert validate_listing_payload({"price": "abc"}, partial=True) == ["Price must be a number."]
    assert validate_listing_payload({}, partial=True) == []


def test_create_stamps_owner_and_geocodes(app):
    (a_id,) = _users(app, "a@example.com")
    gc = FakeGeocoder(point=(-105.0, 40.0))
    with session_scope(app) as s:
        owner = s.get(User, a_id)
        listing = create_listing(
            s,
            {**PAYLOAD, "owner_id": 999},
            owner,
            images=[StoredAsset(url="https://assets.test/k1", handle="k1")],
            geocoder=gc,
        )
        listing_id = listing.id

    with session_scope(app) as s:
        listing = s.get(Listing, listing_id)
        assert listing.owner_id == a_id
        assert listing.geometry == {"type": "Point", "coordinates": [-105.0, 40.0]}
        assert [img.storage_handle for img in listing.images] == ["k1"]
    assert gc.queries == ["Boulder, CO"]


def test_geocoding_failure_does_not_block_save(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        listing = create_listing(s, PAYLOAD, s.get(User, a_id), geocoder=BrokenGeocoder())
        assert listing.id is not None
        assert listing.geometry is None


def test_create_invalid_payload_writes_nothing(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        with pytest.raises(ValidationError):
            create_listing(s, {"title": "x"}, s.get(User, a_id))
    with session_scope(app) as s:
        assert s.execute(select(func.count(Listing.id))).scalar_one() == 0


def test_update_by_owner_never_changes_owner(app):
    a_id, _ = _users(app, "a@example.com", "b@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id)).id

    with session_scope(app) as s:
        updated, _ = update_listing(s, listing_id, {"title": "Pine Flats East", "owner_id": 2}, s.get(User, a_id))
        assert updated.title == "Pine Flats East"
        assert updated.owner_id == a_id
        assert updated.location == "Boulder, CO"


def test_update_by_other_user_is_refused(app):
    a_id, b_id = _users(app, "a@example.com", "b@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id)).id

    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            update_listing(s, listing_id, {"title": "Mine now"}, s.get(User, b_id))
        with pytest.raises(NotFoundError):
            update_listing(s, 12345, {"title": "Nope"}, s.get(User, a_id))

    with session_scope(app) as s:
        assert s.get(Listing, listing_id).title == "Pine Flats"


def test_update_detaches_selected_images_and_reports_them(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(
            s,
            PAYLOAD,
            s.get(User, a_id),
            images=[StoredAsset("https://assets.test/k1", "k1"), StoredAsset("https://assets.test/k2", "k2")],
        ).id

    with session_scope(app) as s:
        listing, released = update_listing(
            s,
            listing_id,
            {},
            s.get(User, a_id),
            images=[StoredAsset("https://assets.test/k3", "k3")],
            delete_images=["k1", "not-mine"],
        )
        assert [img.storage_handle for img in listing.images] == ["k2", "k3"]
        assert released == ["k1"]

    with session_scope(app) as s:
        handles = s.execute(select(ListingImage.storage_handle).order_by(ListingImage.position)).scalars().all()
        assert handles == ["k2", "k3"]


def test_rolled_back_update_keeps_images_and_assets(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id), images=[StoredAsset("https://assets.test/k1", "k1")]).id

    store = FakeAssetStore()
    with session_scope(app) as s:
        _, released = update_listing(s, listing_id, {}, s.get(User, a_id), delete_images=["k1"])
        assert released == ["k1"]
        s.rollback()

    assert store.delete_calls == []
    with session_scope(app) as s:
        assert s.execute(select(ListingImage.storage_handle)).scalars().all() == ["k1"]


@pytest.mark.parametrize("fail_deletes", [False, True])
def test_delete_cascades_reviews_and_assets(app, fail_deletes):
    a_id, b_id = _users(app, "a@example.com", "b@example.com")
    handles = ["k1", "k2", "k3"]
    with session_scope(app) as s:
        listing = create_listing(
            s, PAYLOAD, s.get(User, a_id), images=[StoredAsset(f"https://assets.test/{h}", h) for h in handles]
        )
        listing_id = listing.id
        for rating in (3, 4):
            create_review(s, listing_id, {"rating": rating, "body": "nice"}, s.get(User, b_id))

    store = FakeAssetStore(fail_deletes=fail_deletes)
    with session_scope(app) as s:
        issued = delete_listing(s, listing_id, s.get(User, a_id), asset_store=store)

    assert issued == 3
    assert store.delete_calls == handles
    with session_scope(app) as s:
        assert s.get(Listing, listing_id) is None
        assert s.execute(select(func.count(Review.id)).where(Review.listing_id == listing_id)).scalar_one() == 0
        assert s.execute(select(func.count(ListingImage.id))).scalar_one() == 0
        actions = [e.action for e in s.execute(select(AuditEvent)).scalars()]
        assert "listing.delete" in actions


def test_delete_twice_cascades_once(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id), images=[StoredAsset("u", "k1")]).id

    store = FakeAssetStore()
    with session_scope(app) as s:
        delete_listing(s, listing_id, s.get(User, a_id), asset_store=store)
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            delete_listing(s, listing_id, s.get(User, a_id), asset_store=store)
    assert store.delete_calls == ["k1"]


def _race_after_load(monkeypatch, sql):
    """Run `sql` right after delete_listing has loaded and checked the row."""
    real = listing_service._owned_listing

    def owned_then_race(s, listing_id, user):
        listing = real(s, listing_id, user)
        s.connection().execute(text(sql), {"id": listing_id})
        return listing

    monkeypatch.setattr(listing_service, "_owned_listing", owned_then_race)


def test_delete_losing_to_concurrent_delete(app, monkeypatch):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id), images=[StoredAsset("u", "k1")]).id

    _race_after_load(monkeypatch, "DELETE FROM listings WHERE id = :id")
    store = FakeAssetStore()
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            delete_listing(s, listing_id, s.get(User, a_id), asset_store=store)
    assert store.delete_calls == []
    with session_scope(app) as s:
        assert s.execute(select(AuditEvent).where(AuditEvent.action == "listing.delete")).first() is None


def test_delete_scoped_to_owner_rolls_back_cascade(app, monkeypatch):
    a_id, b_id = _users(app, "a@example.com", "b@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id), images=[StoredAsset("u", "k1")]).id
        create_review(s, listing_id, {"rating": 4, "body": "nice"}, s.get(User, b_id))

    # Ownership moves away between the check and the scoped DELETE.
    _race_after_load(monkeypatch, "UPDATE listings SET owner_id = NULL WHERE id = :id")
    store = FakeAssetStore()
    with session_scope(app) as s:
        with pytest.raises(NotFoundError):
            delete_listing(s, listing_id, s.get(User, a_id), asset_store=store)

    assert store.delete_calls == []
    with session_scope(app) as s:
        listing = s.get(Listing, listing_id)
        assert listing.owner_id == a_id
        assert [img.storage_handle for img in listing.images] == ["k1"]
        assert len(listing.reviews) == 1


def test_delete_by_other_user_is_refused(app):
    a_id, b_id = _users(app, "a@example.com", "b@example.com")
    with session_scope(app) as s:
        listing_id = create_listing(s, PAYLOAD, s.get(User, a_id)).id
    store = FakeAssetStore()
    with session_scope(app) as s:
        with pytest.raises(AuthorizationError):
            delete_listing(s, listing_id, s.get(User, b_id), asset_store=store)
    with session_scope(app) as s:
        assert s.get(Listing, listing_id) is not None
    assert store.delete_calls == []


def test_map_feed_escapes_caption(app):
    (a_id,) = _users(app, "a@example.com")
    with session_scope(app) as s:
        create_listing(s, {**PAYLOAD, "title": "<script>x</script>"}, s.get(User, a_id), geocoder=FakeGeocoder((1.5, 2.5)))
    with session_scope(app) as s:
        (item,) = map_feed(s)
        assert item["title"] == "<script>x</script>"
        assert item["geometry"] == {"type": "Point", "coordinates": [1.5, 2.5]}
        assert "<script>" not in item["popup_text"]
        assert "&lt;script&gt;" in item["popup_text"]
        assert len(list_listings(s)) == 1


def test_listings_json_endpoint(app, client):
    a = signed_in_client(app, "a@example.com")
    create_listing_via_http(a)
    r = client.get("/listings.json")
    assert r.status_code == 200
    (item,) = r.json
    assert set(item) == {"id", "title", "location", "geometry", "popup_text"}
    assert item["title"] == "Auth Test Camp"


def test_owner_edit_and_non_owner_rejected_scenario(app, store):
    a = signed_in_client(app, "a@example.com")
    listing_id = create_listing_via_http(a)

    r = a.put(f"/listings/{listing_id}", data={"title": "Auth Test Camp - Edited"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/listings/{listing_id}")

    b = signed_in_client(app, "b@example.com")
    r = b.put(f"/listings/{listing_id}", data={"title": "Hacked Title"})
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/listings/{listing_id}")
    r = b.delete(f"/listings/{listing_id}")
    assert r.status_code == 302
    assert r.headers["Location"].endswith(f"/listings/{listing_id}")

    with session_scope(app) as s:
        assert s.get(Listing, listing_id).title == "Auth Test Camp - Edited"

    r = b.post(f"/listings/{listing_id}/reviews", data={"rating": "4", "body": "Lovely"})
    assert r.status_code == 302

    r = a.delete(f"/listings/{listing_id}")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/listings")
    with session_scope(app) as s:
        assert s.get(Listing, listing_id) is None
        assert s.execute(select(func.count(Review.id))).scalar_one() == 0


def test_method_override_from_html_form(app):
    a = signed_in_client(app, "a@example.com")
    listing_id = create_listing_via_http(a)
    r = a.post(f"/listings/{listing_id}?_method=DELETE")
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/listings")
    with session_scope(app) as s:
        assert s.get(Listing, listing_id) is None


def test_create_with_image_upload(app, store):
    a = signed_in_client(app, "a@example.com")
    r = a.post(
        "/listings",
        data={
            "title": "Photo Camp",
            "location": "Moab",
            "price": "30",
            "image": [(io.BytesIO(b"\x89PNG fake"), "site.png", "image/png")],
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert len(store.uploaded) == 1
    with session_scope(app) as s:
        listing = s.execute(select(Listing).where(Listing.title == "Photo Camp")).scalar_one()
        assert listing.images[0].url.startswith("https://assets.test/listings/")


def test_create_rejects_non_image_upload(app, store):
    a = signed_in_client(app, "a@example.com")
    r = a.post(
        "/listings",
        data={
            "title": "Doc Camp",
            "location": "Moab",
            "price": "30",
            "image": [(io.BytesIO(b"hello"), "notes.txt", "text/plain")],
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/listings/new")
    assert store.uploaded == {}


def test_anonymous_create_is_redirected(client):
    r = client.post("/listings", data=PAYLOAD)
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/login")


def _upload_listing_image(a, title="Photo Camp"):
    r = a.post(
        "/listings",
        data={
            "title": title,
            "location": "Moab",
            "price": "30",
            "image": [(io.BytesIO(b"\x89PNG fake"), "site.png", "image/png")],
        },
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    return int(r.headers["Location"].rstrip("/").rsplit("/", 1)[-1])


def test_update_releases_removed_images_after_commit(app, store):
    a = signed_in_client(app, "a@example.com")
    listing_id = _upload_listing_image(a)
    (handle,) = store.uploaded

    r = a.put(f"/listings/{listing_id}", data={"delete_images": handle})
    assert r.status_code == 302
    assert store.delete_calls == [handle]
    with session_scope(app) as s:
        assert s.get(Listing, listing_id).images == []


def test_failed_update_releases_fresh_uploads(app, store, monkeypatch):
    a = signed_in_client(app, "a@example.com")
    listing_id = create_listing_via_http(a)

    def listing_vanished(s, listing_id, *args, **kwargs):
        raise NotFoundError("Listing", listing_id)

    monkeypatch.setattr(listing_admin, "update_listing", listing_vanished)
    r = a.put(
        f"/listings/{listing_id}",
        data={"image": [(io.BytesIO(b"\x89PNG fake"), "late.png", "image/png")]},
        content_type="multipart/form-data",
    )
    assert r.status_code == 302
    assert r.headers["Location"].endswith("/listings")
    assert len(store.delete_calls) == 1
    assert store.uploaded == {}
