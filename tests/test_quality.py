"""Tests for message quality scoring."""

from lorekeeper.models import Message
from lorekeeper.quality import (
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
    filter_quality_messages,
    get_adaptive_chunk_size,
    score_message_chunk,
    score_message_quality,
)

COMBAT_SCENE = (
    "*The orc warlord roars and charges across the burning courtyard, his axe raised high.* "
    "Elara dodges the first swing and slashes at his exposed flank, her blade biting deep. "
    "\"You will not take this keep while I still breathe!\" she shouts over the din of battle. "
    "*He kicks her shield aside and grabs her cloak, dragging her toward the broken wall.* "
    "She twists free, throws a dagger at his eye and rolls beneath a second wild attack. "
    "Around them the siege rages on as soldiers fight to hold the gate against the invasion. "
    "The warlord stumbles, bleeding, and she pushes him back with a desperate kick. "
    "\"Yield, or I will kill you where you stand,\" Elara warns, her voice cold and steady. "
    "*His eyes burn with hatred as he raises the cursed axe one final time and lunges.* "
    "She parries the blow, steps inside his reach and stabs upward with all her strength. "
    "The great orc falls to his knees, his death rattle lost beneath the cheers of the defenders. "
    "Elara stands over the body, breathing hard, and looks toward the smoke on the horizon. "
    "\"This was only the vanguard,\" she whispers to the captain. \"The real army marches at dawn, "
    "and we must escape before the next wave arrives to destroy what remains of the town.\""
)


def msg(content, role="user"):
    return Message(conversation_id="c", role=role, content=content)


def test_empty_message_scores_zero():
    score = score_message_quality("user", "")
    assert score.score == 0
    assert score.label == "skip"
    assert score.word_count == 0


def test_short_plain_message_is_skipped():
    score = score_message_quality("user", "yes I agree")
    assert score.score < 3
    assert score.label == "skip"


def test_trivial_and_ooc_messages_are_skipped():
    assert score_message_quality("user", "okay!").label == "skip"
    assert score_message_quality("user", "lol").label == "skip"
    assert score_message_quality("user", "((brb getting coffee, back in five))").label == "skip"
    assert score_message_quality("user", "OOC: can we pause here for tonight?").label == "skip"


def test_short_rp_formatted_message_is_not_skipped():
    score = score_message_quality("user", "*nods slowly*")
    assert score.score >= 3


def test_dense_combat_scene_scores_high():
    score = score_message_quality("assistant", COMBAT_SCENE)
    assert score.word_count >= 120
    assert score.label in ("high", "critical")
    assert score.action_density > 0


def test_score_is_bounded():
    score = score_message_quality("assistant", COMBAT_SCENE * 5)
    assert 0 <= score.score <= 10


def test_chunk_of_trivial_messages_is_not_summarized():
    chunk = score_message_chunk([msg("ok"), msg("lol"), msg("sure"), msg("yes")])
    assert not chunk.should_summarize
    assert chunk.quality_messages == 0
    assert chunk.skip_messages == 4


def test_chunk_with_real_content_is_summarized():
    chunk = score_message_chunk([msg("ok"), msg(COMBAT_SCENE, "assistant"), msg("lol")])
    assert chunk.should_summarize
    assert chunk.quality_messages == 1
    assert chunk.total_words >= 50


def test_filter_quality_messages():
    keep = msg(COMBAT_SCENE, "assistant")
    assert filter_quality_messages([msg("ok"), keep, msg("(ooc stuff)")]) == [keep]


def test_adaptive_chunk_size_bounds():
    dense = [msg(COMBAT_SCENE, "assistant") for _ in range(4)]
    sparse = [msg("ok") for _ in range(4)]

    assert get_adaptive_chunk_size(dense) == MIN_CHUNK_SIZE
    assert get_adaptive_chunk_size(sparse) == MAX_CHUNK_SIZE
    assert get_adaptive_chunk_size([msg("ok")], base=10) == 10
