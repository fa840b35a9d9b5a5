"""
Tests for the pure nudge rule engine.
"""
import pytest

from services.nudge_engine import (
    AnswerRecord,
    AttemptView,
    AudienceContext,
    NudgeRule,
    audience_allows,
    compute_traits,
    render_template,
    select_nudges,
    trait_list,
    trigger_kind,
)

APOLOGY = "apology-style"


def _attempt(result_key="accountability", totals=None, quiz_id=APOLOGY):
    return AttemptView(
        id="a1",
        quiz_id=quiz_id,
        result_key=result_key,
        totals=totals if totals is not None else {"accountability": 5, "time": 1},
    )


def _rule(rule_id, trigger, scope="macro", priority=100, audience=None, copy=None, quiz_id=None):
    return NudgeRule(
        id=rule_id,
        scope=scope,
        trigger=trigger,
        copy_template=copy or {"title": rule_id, "body": "", "tips": []},
        audience=audience or {},
        priority=priority,
        quiz_id=quiz_id,
    )


NO_AUDIENCE = AudienceContext()


class TestTriggers:
    def test_totals_diff_matches_above_threshold(self):
        rule = _rule("tilt", {"totals_diff": {"keys": ["accountability", "time"], "gt": 3}})
        [nudge] = select_nudges(_attempt(), [], NO_AUDIENCE, (rule,))
        assert nudge.dedupe_key == "macro:apology-style:tilt:accountability->time"

    def test_totals_diff_below_threshold_does_not_match(self):
        rule = _rule("tilt", {"totals_diff": {"keys": ["accountability", "time"], "gt": 10}})
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (rule,)) == []

    def test_totals_diff_is_strictly_greater(self):
        rule = _rule("tilt", {"totals_diff": {"keys": ["accountability", "time"], "gt": 4}})
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (rule,)) == []

    def test_totals_diff_missing_keys_count_as_zero(self):
        rule = _rule("tilt", {"totals_diff": {"keys": ["accountability", "gifts"], "gt": 3}})
        [nudge] = select_nudges(_attempt(), [], NO_AUDIENCE, (rule,))
        assert nudge.dedupe_key.endswith("tilt:accountability->gifts")

    def test_result_key(self):
        rule = _rule("rk", {"result_key": "accountability"})
        [nudge] = select_nudges(_attempt(), [], NO_AUDIENCE, (rule,))
        assert nudge.dedupe_key == "macro:apology-style:result:accountability"

    def test_result_key_min_score(self):
        rule = _rule("rk", {"result_key": "accountability", "min_score": 6})
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (rule,)) == []

    def test_any_of_uses_configured_order(self):
        rule = _rule("ans", {"any_of": [
            {"question_id": "q2", "option_key": "b"},
            {"question_id": "q1", "option_key": "a"},
        ]})
        answers = [AnswerRecord("q1", key="a"), AnswerRecord("q2", keys=("b", "c"))]
        [nudge] = select_nudges(_attempt(), answers, NO_AUDIENCE, (rule,))
        assert nudge.dedupe_key == "macro:apology-style:answer:q2:b"

    def test_any_of_no_match(self):
        rule = _rule("ans", {"any_of": [{"question_id": "q1", "option_key": "z"}]})
        assert select_nudges(_attempt(), [AnswerRecord("q1", key="a")], NO_AUDIENCE, (rule,)) == []

    def test_trigger_kind_precedence(self):
        assert trigger_kind({"result_key": "x", "any_of": []}) == "result_key"
        assert trigger_kind({"any_of": [], "totals_diff": {"keys": ["a"]}}) == "any_of"
        assert trigger_kind({"totals_diff": {"keys": []}}) is None
        assert trigger_kind({}) is None

    def test_rule_without_trigger_is_skipped(self):
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (_rule("empty", {}),)) == []

    def test_answer_record_from_raw(self):
        record = AnswerRecord.from_answer("q1", {"keys": ["a", 2]})
        assert record.keys == ("a", "2")
        assert AnswerRecord.from_answer("q1", "junk").key is None


class TestSelection:
    def test_caps_and_macro_first(self):
        rules = (
            _rule("m1", {"result_key": "accountability"}, priority=1),
            _rule("u1", {"result_key": "accountability"}, scope="micro", priority=0),
            _rule("m2", {"totals_diff": {"keys": ["accountability", "time"], "gt": 0}}, priority=2),
            _rule("m3", {"any_of": [{"question_id": "q1", "option_key": "a"}]}, priority=3),
            _rule("u2", {"totals_diff": {"keys": ["accountability", "time"], "gt": 0}}, scope="micro", priority=5),
        )
        nudges = select_nudges(_attempt(), [AnswerRecord("q1", key="a")], NO_AUDIENCE, rules)
        assert [n.rule_id for n in nudges] == ["m1", "m2", "u1"]

    def test_custom_caps(self):
        rules = tuple(
            _rule(f"m{i}", {"any_of": [{"question_id": f"q{i}", "option_key": "a"}]}) for i in range(4)
        )
        answers = [AnswerRecord(f"q{i}", key="a") for i in range(4)]
        assert len(select_nudges(_attempt(), answers, NO_AUDIENCE, rules, macro_cap=3)) == 3
        assert select_nudges(_attempt(), answers, NO_AUDIENCE, rules, macro_cap=0) == []

    def test_priority_then_id_ordering(self):
        rules = (
            _rule("b", {"any_of": [{"question_id": "q1", "option_key": "a"}]}, priority=10),
            _rule("a", {"any_of": [{"question_id": "q2", "option_key": "a"}]}, priority=10),
            _rule("z", {"any_of": [{"question_id": "q3", "option_key": "a"}]}, priority=1),
        )
        answers = [AnswerRecord(q, key="a") for q in ("q1", "q2", "q3")]
        nudges = select_nudges(_attempt(), answers, NO_AUDIENCE, rules, macro_cap=3)
        assert [n.rule_id for n in nudges] == ["z", "a", "b"]

    def test_duplicate_dedupe_key_keeps_first(self):
        rules = (
            _rule("late", {"result_key": "accountability"}, priority=50),
            _rule("early", {"result_key": "accountability"}, priority=5),
        )
        nudges = select_nudges(_attempt(), [], NO_AUDIENCE, rules)
        assert [n.rule_id for n in nudges] == ["early"]

    def test_same_attempt_same_keys(self):
        rules = (
            _rule("m1", {"result_key": "accountability"}),
            _rule("m2", {"totals_diff": {"keys": ["accountability", "time"], "gt": 1}}),
        )
        first = [n.dedupe_key for n in select_nudges(_attempt(), [], NO_AUDIENCE, rules)]
        second = [n.dedupe_key for n in select_nudges(_attempt(), [], NO_AUDIENCE, tuple(reversed(rules)))]
        assert first == second

    def test_rule_for_other_quiz_is_skipped(self):
        rule = _rule("fq", {"result_key": "accountability"}, quiz_id="forgiveness-language")
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (rule,)) == []

    def test_unknown_scope_is_skipped(self):
        rule = _rule("weird", {"result_key": "accountability"}, scope="mega")
        assert select_nudges(_attempt(), [], NO_AUDIENCE, (rule,)) == []

    def test_rules_are_not_mutated(self):
        rules = (_rule("m1", {"result_key": "accountability"}),)
        before = rules[0].trigger.copy()
        select_nudges(_attempt(), [], NO_AUDIENCE, rules)
        assert rules[0].trigger == before


class TestAudience:
    def test_role_predicate(self):
        rule = _rule("r", {"result_key": "x"}, audience={"archetype_role_in": ["Navigator"]})
        assert audience_allows(rule, _attempt(), AudienceContext(role="Navigator"))
        assert not audience_allows(rule, _attempt(), AudienceContext(role="Guardian"))

    def test_missing_value_fails_predicate(self):
        rule = _rule("r", {"result_key": "x"}, audience={"archetype_energy_in": ["Sovereign"]})
        assert not audience_allows(rule, _attempt(), NO_AUDIENCE)

    def test_result_key_predicate(self):
        rule = _rule("r", {"result_key": "x"}, audience={"result_key_in": ["words", "accountability"]})
        assert audience_allows(rule, _attempt(), NO_AUDIENCE)
        assert not audience_allows(rule, _attempt(result_key="gifts"), NO_AUDIENCE)

    def test_audience_blocks_selection(self):
        rule = _rule("r", {"result_key": "accountability"}, audience={"archetype_role_in": ["Navigator"]})
        assert select_nudges(_attempt(), [], AudienceContext(role="Spark"), (rule,)) == []


class TestTemplates:
    def test_render_known_and_unknown_names(self):
        out = render_template("Hi {{ role }}, {{missing}}!", {"role": "Navigator"})
        assert out == "Hi Navigator, !"

    def test_values_are_stringified(self):
        assert render_template("{{a}}/{{b}}/{{c}}", {"a": True, "b": 4.0, "c": None}) == "true/4/"

    def test_single_pass(self):
        assert render_template("{{a}}", {"a": "{{b}}", "b": "x"}) == "{{b}}"

    def test_nudge_copy_is_rendered(self):
        rule = _rule(
            "tilt",
            {"totals_diff": {"keys": ["accountability", "time"], "gt": 3}},
            copy={
                "title": "You lead with {{top_key}}",
                "body": "{{top_key}} ({{top_score}}) over {{low_key}} ({{low_score}}). Traits: {{trait_list}}",
                "cta": "Try it",
                "tips": ["Ask about {{low_key}}", 7],
            },
        )
        [nudge] = select_nudges(_attempt(), [], AudienceContext(role="Navigator"), (rule,))
        assert nudge.title == "You lead with accountability"
        assert nudge.body == "accountability (5) over time (1). Traits: fast to forgive, avoids rehashing conflict"
        assert nudge.cta == "Try it"
        assert nudge.tips == ["Ask about time", "7"]
        assert nudge.to_dict()["hit_id"] is None


class TestTraits:
    def test_no_traits_for_other_quizzes(self):
        assert compute_traits("love-language-giving", {"time": 5}) == {}

    def test_apology_traits(self):
        traits = compute_traits(APOLOGY, {"accountability": 1, "time": 4, "talk": 1, "acknowledge": 3})
        assert traits["resents_if_rushed"] is True
        assert traits["fast_to_forgive"] is False
        assert traits["needs_clear_ack"] is True
        assert traits["avoids_rehashing_conflict"] is True
        assert traits["prefers_action_over_words"] is False

    def test_trait_list(self):
        assert trait_list({"fast_to_forgive": True, "needs_clear_ack": False, "resents_if_rushed": True}) == (
            "fast to forgive, resents if rushed"
        )

    @pytest.mark.parametrize("quiz_id", ["forgiveness-language", "repair_forgiver"])
    def test_forgiveness_slugs(self, quiz_id):
        assert "fast_to_forgive" in compute_traits(quiz_id, {})
