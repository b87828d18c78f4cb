from usagewarden.tier import AccountTier, resolve


class TestResolve:
    def test_max_capability(self) -> "None":
        tier = resolve({"claude_max_20x"})
        assert tier is AccountTier.MAX
        assert tier.weight == 5.0

    def test_empty_set_is_free(self) -> "None":
        tier = resolve(set())
        assert tier is AccountTier.FREE
        assert tier.weight == 0.2

    def test_raven_is_pro(self) -> "None":
        tier = resolve({"raven_access"})
        assert tier is AccountTier.PRO
        assert tier.weight == 1.0

    def test_matching_is_case_insensitive(self) -> "None":
        assert resolve({"Claude_ENTERPRISE"}) is AccountTier.ENTERPRISE

    def test_max_takes_priority_over_team(self) -> "None":
        assert resolve(["team_workspace", "claude_max"]) is AccountTier.MAX

    def test_enterprise_before_team(self) -> "None":
        assert resolve(["team", "enterprise"]) is AccountTier.ENTERPRISE

    def test_team(self) -> "None":
        tier = resolve(["claude_team"])
        assert tier is AccountTier.TEAM
        assert tier.weight == 5.0

    def test_unknown_capabilities_default_to_pro(self) -> "None":
        assert resolve({"chat", "api"}) is AccountTier.PRO


class TestAccountTierWeights:
    def test_weights(self) -> "None":
        assert AccountTier.FREE.weight == 0.2
        assert AccountTier.PRO.weight == 1.0
        assert AccountTier.MAX.weight == 5.0
        assert AccountTier.TEAM.weight == 5.0
        assert AccountTier.ENTERPRISE.weight == 10.0

    def test_persists_as_text(self) -> "None":
        assert AccountTier("enterprise") is AccountTier.ENTERPRISE
        assert AccountTier.MAX.value == "max"
