"""Tests for duty_registry — identity resolution."""

import threading

import pytest

from duty_registry.entities import RawExtractedRecord
from duty_registry.errors import ValidationError
from duty_registry.identity import ALERT_IDENTITY_AMBIGUITY

from .conftest import NOW


def raw(name, district="Kadıköy", **kwargs):
    return RawExtractedRecord(name=name, fetched_at=NOW, district=district, **kwargs)


# ---- resolve_district -------------------------------------------------------


class TestResolveDistrict:
    def test_by_slug(self, services, seed):
        assert services.identity.resolve_district(seed.region.id, "kadikoy").name == "Kadıköy"

    def test_by_folded_name(self, services, seed):
        assert services.identity.resolve_district(seed.region.id, "ŞİŞLİ").name == "Şişli"

    def test_partial_match(self, services, seed):
        assert services.identity.resolve_district(seed.region.id, "Beşiktaş İlçesi").name == "Beşiktaş"

    def test_unknown_falls_back_to_merkez(self, services, seed):
        assert services.identity.resolve_district(seed.region.id, "Nowhere").slug == "merkez"

    def test_missing_district_falls_back_to_merkez(self, services, seed):
        assert services.identity.resolve_district(seed.region.id, None).slug == "merkez"

    def test_region_without_districts(self, services, store):
        empty = store.add_region("bos", "Boş")
        with pytest.raises(ValidationError):
            services.identity.resolve_district(empty.id, "Merkez")


# ---- match ------------------------------------------------------------------


class TestMatch:
    def test_creates_new_pharmacy(self, services, seed):
        pharmacy, created = services.identity.match(seed.region.id, raw("Yıldız Eczanesi"), NOW)
        assert created
        assert pharmacy.normalized_name == "yildiz"
        assert pharmacy.district_id == seed.district.id

    def test_exact_normalized_match_is_idempotent(self, services, seed):
        first = services.identity.resolve(seed.region.id, raw("Yıldız Eczanesi"), NOW)
        second = services.identity.resolve(seed.region.id, raw("YILDIZ ECZ."), NOW)
        assert first == second

    def test_fuzzy_match_on_typo(self, services, seed):
        original, _ = services.identity.match(seed.region.id, raw("Merkez Hayat Eczanesi"), NOW)
        typo, created = services.identity.match(seed.region.id, raw("Merkez Hayaat Eczanesi"), NOW)
        assert not created
        assert typo.id == original.id

    def test_fuzzy_match_survives_canonical_rename(self, services, store, seed):
        original, _ = services.identity.match(seed.region.id, raw("Merkez Hayat Eczanesi"), NOW)
        renamed = store.get_pharmacy(original.id)
        renamed.canonical_name = "Hayat Sağlık Ecz."
        store.update_pharmacy(renamed)

        typo, created = services.identity.match(seed.region.id, raw("Merkez Hayaat Eczanesi"), NOW)

        assert not created
        assert typo.id == original.id

    def test_same_name_in_other_district_is_different_pharmacy(self, services, seed):
        a = services.identity.resolve(seed.region.id, raw("Yıldız Eczanesi", district="Kadıköy"), NOW)
        b = services.identity.resolve(seed.region.id, raw("Yıldız Eczanesi", district="Fatih"), NOW)
        assert a != b

    def test_superset_name_not_merged(self, services, seed):
        a = services.identity.resolve(seed.region.id, raw("Yıldız Eczanesi"), NOW)
        b = services.identity.resolve(seed.region.id, raw("Yıldız Merkez Eczanesi"), NOW)
        assert a != b

    def test_far_apart_fuzzy_candidate_rejected(self, services, seed):
        a = services.identity.resolve(seed.region.id, raw("Merkez Hayat", lat=41.0, lng=29.0), NOW)
        b = services.identity.resolve(seed.region.id, raw("Merkez Hayaat", lat=41.1, lng=29.0), NOW)
        assert a != b

    def test_backfills_missing_coordinates(self, services, store, seed):
        pharmacy_id = services.identity.resolve(seed.region.id, raw("Deniz Eczanesi"), NOW)
        services.identity.resolve(seed.region.id, raw("Deniz Eczanesi", lat=40.99, lng=29.03), NOW)
        stored = store.get_pharmacy(pharmacy_id)
        assert (stored.lat, stored.lng) == (40.99, 29.03)

    def test_short_name_rejected(self, services, seed):
        with pytest.raises(ValidationError):
            services.identity.match(seed.region.id, raw("Ec"), NOW)

    def test_ambiguity_creates_new_pharmacy_and_alerts(self, services, store, seed):
        x = services.identity.resolve(seed.region.id, raw("Deniz Hayatk"), NOW)
        y = services.identity.resolve(seed.region.id, raw("Deniz Khayat"), NOW)

        pharmacy, created = services.identity.match(seed.region.id, raw("Deniz Hayat"), NOW)

        assert created
        assert pharmacy.id not in (x, y)
        alerts = store.list_open_alerts(limit=10, region_id=seed.region.id)
        assert [a.alert_type for a in alerts] == [ALERT_IDENTITY_AMBIGUITY]
        assert alerts[0].severity == "low"
        assert sorted(alerts[0].payload["candidates"]) == sorted([x, y])

    def test_concurrent_creation_yields_one_pharmacy(self, services, store, seed):
        ids = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            ids.append(services.identity.resolve(seed.region.id, raw("Güneş Eczanesi"), NOW))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(ids)) == 1
        assert len(store.list_pharmacies(seed.region.id, seed.district.id)) == 1
