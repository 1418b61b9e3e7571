"""Shared test doubles and canned model responses."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx

from mystery_walk.models import (
    Evidence,
    EvidencePack,
    GenerationMetadata,
    GeoPoint,
    LaytonPuzzle,
    LoreCard,
    MainPlot,
    MetaPuzzle,
    PlayerPreview,
    QuestDualOutput,
    QuestOutput,
    Reward,
    SpotInput,
    SpotScene,
)


# ---------------------------------------------------------------------------
# StubLLM — dispatches by stage name, independent queue per stage
# ---------------------------------------------------------------------------

class StubLLM:
    """Deterministic LLM stand-in for tests.

    Provide a dict mapping stage name → list of responses (in call order).
    A response that is an Exception instance is raised instead of returned.
    Raises if a stage is called more times than responses were provided.
    """

    def __init__(self, responses: dict[str, list]) -> None:
        self._queues: dict[str, list] = {k: list(v) for k, v in responses.items()}
        self.calls: list[tuple[str, str]] = []

    async def __call__(self, stage: str, prompt: str) -> str:
        self.calls.append((stage, prompt))
        queue = self._queues.get(stage)
        if not queue:
            raise AssertionError(
                f"StubLLM: unexpected call to stage={stage!r} "
                f"(no responses queued). calls so far: {[c[0] for c in self.calls]}"
            )
        response = queue.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def stages(self) -> list[str]:
        return [stage for stage, _ in self.calls]

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed, so missing LLM calls fail the test."""
        leftover = {k: v for k, v in self._queues.items() if v}
        if leftover:
            raise AssertionError(f"StubLLM: unused responses remain: {leftover}")


class StubGeocoder:
    """Returns fixed points by spot name, None for unknown names."""

    def __init__(self, points: dict[str, tuple[float, float]] | None = None) -> None:
        self._points = points or {}
        self.calls: list[str] = []

    async def __call__(self, spot_name, center_lat=None, center_lng=None, radius_km=2.0):
        self.calls.append(spot_name)
        if spot_name not in self._points:
            return None
        lat, lng = self._points[spot_name]
        return GeoPoint(lat=lat, lng=lng, place_id=f"place-{spot_name}")


class StalledStream(httpx.AsyncByteStream):
    """Response body that sends its chunks and then never finishes."""

    def __init__(self, *chunks: bytes) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk
        await asyncio.sleep(3600)
        yield b""


class EmptyRetriever:
    """Finds no evidence for any spot."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    async def __call__(self, spot_id, spot_name, lat, lng) -> EvidencePack:
        self.calls.append(spot_id)
        return EvidencePack(
            spot_id=spot_id,
            spot_name=spot_name,
            lat=lat,
            lng=lng,
            retrieved_at=datetime.now(timezone.utc).isoformat(),
        )


# ---------------------------------------------------------------------------
# Asakusa walk: three stops, each hop well under 800 m
# ---------------------------------------------------------------------------

ASAKUSA_STOPS = [
    {
        "spot_name": "雷門",
        "spot_summary": "浅草寺の総門。巨大な赤い提灯で知られる。",
        "spot_facts": ["大提灯の重さは約700kg", "門の左右に風神と雷神が立つ", "正式名称は風雷神門"],
        "spot_theme_tags": ["歴史", "寺院"],
        "lat": 35.711092,
        "lng": 139.796347,
    },
    {
        "spot_name": "浅草寺",
        "spot_summary": "東京最古の寺。本堂には観音像が祀られている。",
        "spot_facts": ["本尊は聖観世音菩薩", "境内に五重塔がある", "毎年三社祭が近くで行われる"],
        "spot_theme_tags": ["歴史", "寺院"],
        "lat": 35.714765,
        "lng": 139.796655,
    },
    {
        "spot_name": "浅草神社",
        "spot_summary": "浅草寺の隣に建つ神社。三社様と呼ばれる。",
        "spot_facts": ["三人の人物を祀る", "社殿は重要文化財", "三社祭の中心となる神社"],
        "spot_theme_tags": ["歴史", "神社"],
        "lat": 35.715490,
        "lng": 139.797450,
    },
]

ASAKUSA_NAMES = [s["spot_name"] for s in ASAKUSA_STOPS]

SPOTS_RESPONSE = "```json\n" + json.dumps(ASAKUSA_STOPS, ensure_ascii=False) + "\n```"

MOTIFS_RESPONSE = json.dumps([
    {"spot_id": "S1", "spot_name": "雷門", "selected_facts": ["fact_1", "fact_2"],
     "scene_role": "intro", "plot_key_type": "keyword", "suggested_puzzle_type": "cipher"},
    {"spot_id": "S2", "spot_name": "浅草寺", "selected_facts": ["fact_2"],
     "scene_role": "turning_point", "plot_key_type": "number", "suggested_puzzle_type": "logic"},
    {"spot_id": "S3", "spot_name": "浅草神社", "selected_facts": ["fact_1", "fact_3"],
     "scene_role": "finale", "plot_key_type": "symbol", "suggested_puzzle_type": "wordplay"},
], ensure_ascii=False)

PLOT_RESPONSE = json.dumps({
    "premise": "あなたは雨上がりの浅草に立っている。雷門の大提灯が、いつもと違う揺れ方をしている。",
    "goal": "三つの場所に残された合図を集め、消えた鐘の音の行方を突き止めること。",
    "antagonist_or_mystery": "百年前に鐘を隠した門番の暗号。",
    "final_reveal_outline": "三つの合図を重ねると、鐘が眠る場所の名前が浮かび上がる。",
}, ensure_ascii=False)

GOOD_PROMPT = (
    "案内板の言葉に従って三つの方向を順に見たとき、浮かび上がる三つの文字を並べると"
    "どんな言葉になるだろうか。答えをひらがなで答えよ。"
)

TRIVIA_PROMPT = "この門は何年に建てられたでしょうか？案内板を見ずに答えてください。"


def puzzle_response(spot_name: str, plot_key: str, prompt: str = GOOD_PROMPT) -> str:
    """A well-formed stage-3 answer that passes validation."""
    return json.dumps({
        "lore_card": {
            "short_story_text": f"{spot_name}の前で、あなたは古い案内板に気づく。",
            "facts_used": [f"{spot_name}の案内板"],
            "player_handout": (
                f"{spot_name}の案内板にはこう書かれている。「門をくぐる者は、最初に右を見よ。"
                "次に左を見よ。最後に天を仰げ。そこに三つの文字が浮かぶ」。三つの文字を順に読むこと。"
            ),
        },
        "puzzle": {
            "type": "cipher",
            "prompt": prompt,
            "answer": plot_key,
            "solution_steps": ["右の文字を読む", "左の文字を読む", "天の文字を読んで並べる"],
            "hints": ["方向が鍵です", "右・左・上の順です", f"答えは{plot_key[:1]}から始まります"],
            "difficulty": 2,
        },
        "reward": {
            "lore_reveal": f"{spot_name}の案内板の言葉は、かつての門番が残した合図だった。",
            "plot_key": plot_key,
            "next_hook": "遠くで、鐘の音がかすかに響いた。",
        },
        "linking_rationale": (
            f"{spot_name}の案内板に刻まれた言葉をそのまま謎の資料にしているため、"
            "この場所に立たなければ解けない構成になっている。"
        ),
    }, ensure_ascii=False)


META_RESPONSE = json.dumps({
    "prompt": "三つの鍵を集めた順に並べ、鐘が眠る場所の名前を読み解け。",
    "answer": "かねのね",
    "explanation": "三つの合図は、鐘の音が今も響く場所を指していた。",
}, ensure_ascii=False)

TITLE_RESPONSE = "「浅草・消えた鐘の暗号」\n"

PREVIEW_RESPONSE = json.dumps({
    "one_liner": "雷門の提灯が揺れた夜、百年前の暗号が目を覚ます",
    "trailer": "雨上がりの浅草で、あなたは門番の残した合図を追う。",
    "mission": "あなたは三つの合図を集め、最後に鐘の行方を突き止める",
    "teasers": ["雷門で提灯の影を読む", "浅草寺で数の秘密に触れる", "浅草神社で三つの名前を重ねる"],
    "summary_actions": ["歩く", "集める", "照合する"],
    "difficulty_reason": "資料を読めば解ける謎が中心",
    "weather_note": "屋外多め",
    "highlight_spots": [{"name": "雷門", "teaser_experience": "ここで提灯を見上げると合図が見える"}],
    "tags": ["ミステリー好き", "初心者OK"],
}, ensure_ascii=False)

PLOT_KEYS = ["かね", "の", "ね"]


def full_run_responses(**overrides) -> dict[str, list]:
    """Stage → responses for one clean three-stop generation."""
    responses: dict[str, list] = {
        "spots": [SPOTS_RESPONSE],
        "motif": [MOTIFS_RESPONSE],
        "plot": [PLOT_RESPONSE],
        "puzzle": [puzzle_response(name, key) for name, key in zip(ASAKUSA_NAMES, PLOT_KEYS)],
        "meta_puzzle": [META_RESPONSE],
        "title": [TITLE_RESPONSE],
        "preview": [PREVIEW_RESPONSE],
    }
    responses.update(overrides)
    return responses


# ---------------------------------------------------------------------------
# Model builders
# ---------------------------------------------------------------------------

def make_spot(index: int = 0, **overrides) -> SpotInput:
    data = dict(ASAKUSA_STOPS[index])
    data.update(overrides)
    return SpotInput(**data)


def asakusa_spots() -> list[SpotInput]:
    return [make_spot(i) for i in range(len(ASAKUSA_STOPS))]


def make_plot() -> MainPlot:
    return MainPlot.model_validate_json(PLOT_RESPONSE)


def make_scene(spot_id: str = "S1", spot_name: str = "雷門", plot_key: str = "かね", **puzzle_overrides) -> SpotScene:
    data = json.loads(puzzle_response(spot_name, plot_key))
    data["puzzle"].update(puzzle_overrides)
    return SpotScene(
        spot_id=spot_id,
        spot_name=spot_name,
        lat=35.71,
        lng=139.79,
        scene_role="intro",
        lore_card=LoreCard(**data["lore_card"]),
        puzzle=LaytonPuzzle(**data["puzzle"]),
        reward=Reward(**data["reward"]),
        linking_rationale=data["linking_rationale"],
    )


def make_scenes() -> list[SpotScene]:
    return [
        make_scene(f"S{i + 1}", name, key)
        for i, (name, key) in enumerate(zip(ASAKUSA_NAMES, PLOT_KEYS))
    ]


def make_meta(scenes: list[SpotScene]) -> MetaPuzzle:
    return MetaPuzzle(
        inputs=[f"{s.spot_id}.plot_key" for s in scenes],
        prompt="三つの鍵を並べよ。",
        answer="".join(s.reward.plot_key for s in scenes),
        explanation="全てがつながった。",
    )


def make_quest(quest_id: str = "quest-1", generated_at: str = "2026-01-01T00:00:00+00:00") -> QuestDualOutput:
    scenes = make_scenes()
    return QuestDualOutput(
        player_preview=PlayerPreview(title="浅草・消えた鐘の暗号"),
        creator_payload=QuestOutput(
            quest_id=quest_id,
            quest_title="浅草・消えた鐘の暗号",
            main_plot=make_plot(),
            spots=scenes,
            meta_puzzle=make_meta(scenes),
            generation_metadata=GenerationMetadata(
                generated_at=generated_at,
                pipeline_version="2.0.0-layton",
                validation_passed=True,
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Evidence-grounded puzzles
# ---------------------------------------------------------------------------

GROUNDED_LINK = "門番の物語に登場する二柱の神のうち、最初の一柱がここで待っている。その秘密は門に刻まれた歴史そのものだ。"


def make_evidence_pack(spot_id: str = "S1", with_evidence: bool = True, sufficiency: float = 0.6) -> EvidencePack:
    evidences = [
        Evidence(
            id=f"evidence-{spot_id}-0",
            type="statue",
            content="門の右側に風神像、左側に雷神像が立つ",
            source_url="https://ja.wikipedia.org/wiki/雷門",
            source_type="wikipedia",
            confidence=0.8,
            location_description="門の左右",
            retrieved_at="2026-01-01T00:00:00+00:00",
        ),
        Evidence(
            id=f"evidence-{spot_id}-1",
            type="official_name",
            content="風雷神門",
            source_url="https://www.google.com/maps/search/?api=1&query=雷門",
            source_type="google_places",
            confidence=0.75,
            location_description="施設入口または看板",
            retrieved_at="2026-01-01T00:00:00+00:00",
        ),
    ] if with_evidence else []
    return EvidencePack(
        spot_id=spot_id,
        spot_name="雷門",
        lat=35.711092,
        lng=139.796347,
        official_description="浅草寺の総門。",
        evidences=evidences,
        retrieved_at="2026-01-01T00:00:00+00:00",
        sufficiency_score=sufficiency if with_evidence else 0.0,
    )


def grounded_puzzle_data(**overrides) -> dict:
    data = {
        "puzzle_statement": "雷門の大提灯の下に立ち、門番が残した言葉を探せ。",
        "on_site_instruction": "門の正面から見て右側に立つ像の足元の説明プレートを読む",
        "evidence_used": [{
            "evidence_id": "evidence-S1-0",
            "source_url": "https://ja.wikipedia.org/wiki/雷門",
            "usage": "像の名前を答えにした",
        }],
        "solution_steps": ["右側の像を確認する", "像の名前を読む", "答えは風神"],
        "answer": "風神",
        "acceptable_answers": ["ふうじん"],
        "hints": ["門の右側を見よう", "風を司る神様です"],
        "final_rescue": "show_answer",
        "success_message": "正解！次は浅草寺へ。",
        "narrative_link": GROUNDED_LINK,
    }
    data.update(overrides)
    return data


GROUNDED_RESPONSE = json.dumps({"status": "success", "puzzle": grounded_puzzle_data()}, ensure_ascii=False)

SHORTFALL_RESPONSE = json.dumps({
    "status": "needs_more_evidence",
    "missing_evidence": ["看板のテキスト", "建物の正式名称"],
    "suggestion": "案内板の写真があれば謎を作れます",
}, ensure_ascii=False)


class FixedRetriever:
    """Returns the same pack for every spot."""

    def __init__(self, pack: EvidencePack) -> None:
        self._pack = pack
        self.calls: list[tuple] = []

    async def __call__(self, spot_id, spot_name, lat, lng) -> EvidencePack:
        self.calls.append((spot_id, spot_name, lat, lng))
        return self._pack
