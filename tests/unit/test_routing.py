"""Tests for traffic split snapshots and variant assignment."""

import random
import threading

from delivery_plane.core.deployment import RoutingSnapshot, RoutingStrategy, RoutingTable, Variant, choose_variant
from delivery_plane.core.deployment.routing import routing_bucket, weight_schedule


class TestRoutingTable:
    """Tests for publishing routing snapshots."""

    def test_initial_snapshot(self):
        table = RoutingTable("checkout")
        assert table.snapshot == RoutingSnapshot(stable_weight=100, canary_weight=0, version=0)

    def test_publish_bumps_version(self):
        table = RoutingTable("checkout")
        first = table.publish(10)
        second = table.publish(50)
        assert (first.canary_weight, first.stable_weight, first.version) == (10, 90, 1)
        assert (second.canary_weight, second.version) == (50, 2)
        assert table.snapshot is second

    def test_publish_clamps(self):
        table = RoutingTable("checkout")
        assert table.publish(150).canary_weight == 100
        assert table.publish(-5).canary_weight == 0

    def test_weights_always_sum_to_100(self):
        table = RoutingTable("checkout")
        for weight in (0, 1, 33, 99, 100):
            snapshot = table.publish(weight)
            assert snapshot.stable_weight + snapshot.canary_weight == 100

    def test_on_publish_callback(self):
        published = []
        table = RoutingTable("checkout", on_publish=lambda service, snap: published.append((service, snap.version)))
        table.publish(5)
        assert published == [("checkout", 1)]

    def test_callback_error_is_logged(self):
        def broken(service, snapshot):
            raise RuntimeError("listener down")

        table = RoutingTable("checkout", on_publish=broken)
        assert table.publish(5).canary_weight == 5

    def test_concurrent_publishes_never_reuse_versions(self):
        table = RoutingTable("checkout")
        versions = []
        lock = threading.Lock()

        def worker():
            for _ in range(50):
                snap = table.publish(10)
                with lock:
                    versions.append(snap.version)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sorted(versions) == list(range(1, 201))


class TestChooseVariant:
    """Tests for request assignment."""

    def test_zero_weight_always_stable(self):
        snapshot = RoutingSnapshot(stable_weight=100, canary_weight=0, version=1)
        assert all(
            choose_variant(RoutingStrategy.RANDOM, snapshot, "svc") == Variant.STABLE for _ in range(100)
        )

    def test_full_weight_always_canary(self):
        snapshot = RoutingSnapshot(stable_weight=0, canary_weight=100, version=1)
        assert choose_variant(RoutingStrategy.STICKY, snapshot, "svc", user_id="u1") == Variant.CANARY

    def test_sticky_is_stable_per_user(self):
        snapshot = RoutingSnapshot(stable_weight=70, canary_weight=30, version=1)
        for i in range(50):
            user = f"user-{i}"
            expected = Variant.CANARY if routing_bucket(user, "svc") < 30 else Variant.STABLE
            assert choose_variant(RoutingStrategy.STICKY, snapshot, "svc", user_id=user) == expected

    def test_random_split_approximates_weight(self):
        snapshot = RoutingSnapshot(stable_weight=80, canary_weight=20, version=1)
        rng = random.Random(7)
        canary = sum(
            1
            for _ in range(5000)
            if choose_variant(RoutingStrategy.RANDOM, snapshot, "svc", rng=rng) == Variant.CANARY
        )
        assert 0.17 < canary / 5000 < 0.23

    def test_sticky_without_user_falls_back_to_random(self):
        snapshot = RoutingSnapshot(stable_weight=50, canary_weight=50, version=1)
        rng = random.Random(1)
        seen = {choose_variant(RoutingStrategy.STICKY, snapshot, "svc", rng=rng) for _ in range(100)}
        assert seen == {Variant.STABLE, Variant.CANARY}


def test_weight_schedule():
    assert weight_schedule([5, 25, 100]) == "5% -> 25% -> 100%"
