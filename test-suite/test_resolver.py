#!/usr/bin/env python3
import pathlib
import random
import sys
import unittest

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parent))

from fakes import ST  # noqa: E402


def group(name, selected=None, *members):
    names = members or ((selected,) if selected else ())
    return ST.PolicyGroup(name, tuple(ST.PolicyMember(m) for m in names), selected)


def chain_of(n, leaf="leaf"):
    """G0 -> G1 -> ... -> G{n-1} -> leaf"""
    groups = []
    for i in range(n):
        nxt = f"G{i + 1}" if i + 1 < n else leaf
        groups.append(group(f"G{i}", nxt))
    return groups


class TestResolvePolicyChain(unittest.TestCase):
    def test_nested_groups_resolve_to_leaf_latency(self):
        snap = ST.Snapshot(
            policies=(ST.Policy("us-1", availability=ST.Availability.AVAILABLE, latency_ms=120),),
            groups=(group("Proxy", "USGroup"), group("USGroup", "us-1")),
        )
        res = ST.resolve_policy(snap, "Proxy")
        self.assertTrue(res.ok)
        self.assertEqual(res.leaf, "us-1")
        self.assertEqual(res.chain, ("Proxy", "USGroup", "us-1"))
        self.assertEqual(res.policy.latency_ms, 120)

    def test_nine_groups_fit_under_the_ceiling(self):
        res = ST.resolve_policy_chain(chain_of(9), "G0")
        self.assertTrue(res.ok)
        self.assertEqual(res.leaf, "leaf")
        self.assertEqual(len(res.chain), 10)

    def test_ten_groups_exceed_the_ceiling(self):
        res = ST.resolve_policy_chain(chain_of(10), "G0")
        self.assertFalse(res.ok)
        self.assertIsNone(res.leaf)
        self.assertEqual(res.failure, ST.ResolutionFailure.DEPTH_EXCEEDED)

    def test_self_reference_is_a_cycle(self):
        res = ST.resolve_policy_chain([group("X", "X")], "X")
        self.assertEqual(res.failure, ST.ResolutionFailure.CYCLE)

    def test_two_group_cycle(self):
        res = ST.resolve_policy_chain([group("X", "Y"), group("Y", "X")], "X")
        self.assertEqual(res.failure, ST.ResolutionFailure.CYCLE)
        self.assertEqual(res.chain, ("X", "Y", "X"))

    def test_cycle_longer_than_the_ceiling_is_still_a_cycle(self):
        groups = [group(f"C{i}", f"C{(i + 1) % 15}") for i in range(15)]
        res = ST.resolve_policy_chain(groups, "C0")
        self.assertEqual(res.failure, ST.ResolutionFailure.CYCLE)

    def test_cycle_behind_a_long_tail(self):
        groups = chain_of(12, leaf="K0") + [group("K0", "K1"), group("K1", "K0")]
        res = ST.resolve_policy_chain(groups, "G0")
        self.assertEqual(res.failure, ST.ResolutionFailure.CYCLE)

    def test_group_without_selection(self):
        res = ST.resolve_policy_chain([group("Proxy", "Auto"), group("Auto", None, "a", "b")], "Proxy")
        self.assertEqual(res.failure, ST.ResolutionFailure.NO_SELECTION)
        self.assertEqual(res.chain, ("Proxy", "Auto"))

    def test_plain_policy_resolves_to_itself(self):
        res = ST.resolve_policy_chain([], "DIRECT")
        self.assertTrue(res.ok)
        self.assertEqual(res.chain, ("DIRECT",))

    def test_accepts_mapping(self):
        groups = {g.name: g for g in chain_of(3)}
        self.assertEqual(ST.resolve_policy_chain(groups, "G0").leaf, "leaf")

    def test_describe(self):
        ok = ST.resolve_policy_chain(chain_of(1), "G0")
        self.assertEqual(ok.describe(), "G0 -> leaf")
        bad = ST.resolve_policy_chain([group("X", "X")], "X")
        self.assertIn("cycle", bad.describe())

    def test_random_graphs_always_terminate(self):
        rnd = random.Random(1234)
        for _ in range(300):
            n = rnd.randint(1, 20)
            names = [f"g{i}" for i in range(n)]
            targets = names + ["p1", "p2", None]
            groups = [group(name, rnd.choice(targets)) for name in names]
            res = ST.resolve_policy_chain(groups, rnd.choice(names))
            if res.ok:
                self.assertNotIn(res.leaf, names)
                self.assertLessEqual(len(res.chain), ST.MAX_CHAIN_DEPTH)
            else:
                self.assertIsNone(res.leaf)
                self.assertIsNotNone(res.failure)


if __name__ == "__main__":
    unittest.main()
