"""Handlebars prompt templates for every LLM call in the pipeline.

Free text is always inserted with triple-stache ({{{ }}}) so quotes and
ampersands reach the model unescaped. Structured context goes through the
`json` helper.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import pybars


_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_json(this, value):
    """{{{json value}}} — pretty-printed JSON, non-ASCII kept as-is."""
    return json.dumps(value, ensure_ascii=False, indent=2)


def _helper_join(this, items, sep=", "):
    """{{{join tags "、"}}} — join a list with a separator."""
    return sep.join(str(i) for i in items or [])


_HELPERS: dict[str, Callable] = {
    "json": _helper_json,
    "join": _helper_join,
}


def render_prompt(template_str: str, context: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given context.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(context, helpers=_HELPERS)).strip()
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Readability rules shared by the narrative stages ─────

READABILITY_RULES = """【文章の読みやすさ（最重要）】
- 中学生が読んでスラスラ理解できる言葉を使う
- 専門用語・難しい漢字・意味不明なカタカナ語は使わない
- 一文は短く、リズムよく読めるように
- 読んでいて「しんどい」と感じさせない、軽やかな文体"""


# ── Stop selection ───────────────────────────────────────

SPOTS_TEMPLATE = """あなたは位置連動ミステリークエストの設計者です。
以下のリクエストに基づいて、徒歩で巡るスポット情報を生成してください。

【メインリクエスト（最優先）】
{{{prompt}}}

{{#if center}}【エリア指定（必須）】
ユーザーの現在地：緯度{{center.lat}} / 経度{{center.lng}}
この地点から半径{{radius_km}}km以内にある実在のスポットだけを選んでください。

{{/if}}【基本設定】
- スポット数: {{spot_count}}件
- 難易度: {{difficulty}}

{{#if support}}【補助条件】
{{#each support}}- {{{this}}}
{{/each}}
※補助条件はメインリクエストを上書きしません。矛盾する場合はメインを優先してください。

{{/if}}【ウォーキングのルール】
- 全ての隣接スポット間は徒歩5〜8分（800m以内）に収める
- 電車・バス・車での移動が必要な配置は禁止
- 行ったり来たりしない、一筆書きで巡れる順番で並べる
- Google Mapsでピンポイントに表示される正式名称を使う

{{{readability}}}

【出力形式】
以下のJSON配列だけを出力してください：
[
  {
    "spot_name": "正式名称",
    "spot_summary": "2-4行の概要（歴史的背景、特徴）",
    "spot_facts": ["この場所を象徴する具体的な事実", "別の側面からの事実", "謎のモチーフになりそうな事実"],
    "spot_theme_tags": ["タグ1", "タグ2"],
    "lat": 35.00000,
    "lng": 139.00000
  }
]

【重要】
- spot_factsは3-7個、具体的で謎のモチーフになれる事実を
- 緯度経度は可能な範囲で正確に（後で補正されます）"""


# ── Stage 1: motif selection ─────────────────────────────

MOTIF_TEMPLATE = """あなたは物語構成の専門家です。
以下のスポット情報を分析し、各スポットの物語上の役割を決定してください。

【重要な原則】
1. 全体で一貫した物語の流れを作る
2. 各スポットには明確な役割（scene_role）を割り当てる
3. factsから1-2個を選び、謎のモチーフにする
4. plot_keyは最後のmeta_puzzleで使われることを意識する

【scene_roleの種類】
- intro: 物語の始まり、世界観を提示
- rising: 情報収集、謎が深まる
- turning_point: 状況が変わる、新事実が判明
- climax_approach: 核心に迫る
- red_herring_resolution: 誤解が解ける
- finale: 物語の締めくくり

【plot_key_typeの種類】
keyword / cipher_piece / coordinate / name / number / symbol

【puzzle_typeの種類】
logic（証言整理） / pattern（数列など） / cipher（暗号解読） / wordplay（漢字分解など） / lateral（矛盾解釈） / math（算数パズル）

【クエストテーマ】
{{{theme}}}

{{#if context}}【旅の条件・世界観】
{{{context}}}

{{/if}}【スポット一覧】
{{{json spots}}}

【出力形式】
以下のJSON配列を出力してください（スポットと同じ数・同じ順番）：
[
  {
    "spot_id": "S1",
    "spot_name": "スポット名",
    "selected_facts": ["fact_1", "fact_3"],
    "scene_role": "intro",
    "plot_key_type": "keyword",
    "suggested_puzzle_type": "logic"
  }
]

重要:
- 最初のスポットは必ず intro
- 最後のスポットは必ず finale
- turning_point は中盤に1-2個配置
- 各factsは異なるスポットで使い分ける（重複最小限）"""


# ── Stage 2: main plot ───────────────────────────────────

PLOT_TEMPLATE = """あなたは物語作家です。
以下のスポットモチーフを使って、一貫した謎解き物語を構築してください。

【重要な原則】
1. premise（発端）→ goal（目的）→ antagonist_or_mystery（対立/謎）→ final_reveal_outline（真相）の4点を明確に
2. 各スポットが物語の一部として必ず機能すること
3. 最後のmeta_puzzleで全てが繋がる構造にすること

【premiseのルール】
- 500〜800文字、3〜5段落
- 現在形の二人称（「あなたは〜」）で語りかける
- 最後は問いかけで終える
- 結末・真相・どんでん返しは絶対に明かさない

{{{readability}}}

【クエストテーマ】
{{{theme}}}

{{#if context}}【旅の条件・世界観】
{{{context}}}
※旅の条件は物語の発端や目的に必ず反映してください。

{{/if}}【スポットモチーフ】
{{{json motifs}}}

【出力形式】
以下のJSONを出力してください：
{
  "premise": "物語の発端",
  "goal": "主人公の目的",
  "antagonist_or_mystery": "対立要素または中心の謎",
  "final_reveal_outline": "最終的な真相の概要（meta_puzzleで明かされる結論）"
}"""


# ── Stage 3: per-spot puzzle ─────────────────────────────

PUZZLE_TYPE_GUIDES: dict[str, str] = {
    "logic": """【論理パズルの設計ガイド】
- 3人以上の証言から真実を見つける
- 条件を整理すると答えが一意に決まる
例: 「3人の商人がそれぞれ異なることを言っている。正直者は1人だけ。誰が正直者か？」""",
    "pattern": """【パターンパズルの設計ガイド】
- 数列や図形の規則性を見つける
- スポットの特徴（年号、人数など）を数列に組み込む
例: 「○→△→□→？ この並びの法則は？」""",
    "cipher": """【暗号パズルの設計ガイド】
- スポットのテーマをモチーフにした暗号（換字式、位置暗号、キーワード暗号など）
- 解読の鍵はplayer_handoutに含める
例: 「この碑文に刻まれた記号は、実は○○を表している...」""",
    "wordplay": """【言葉遊びパズルの設計ガイド】
- 漢字の分解・合成、アナグラム、頭文字・末文字集め
- スポット名や地名の特徴を活用
例: 「この5つの言葉の頭文字を並べると...？」""",
    "lateral": """【水平思考パズルの設計ガイド】
- 一見矛盾する状況を解釈する
- 視点を変えると答えが見える
例: 「なぜ彼は雨の日にしか現れないのか？」""",
    "math": """【算数パズルの設計ガイド】
- 条件を組み合わせて唯一の答えを導く
- スポットに関連する数字（年号、距離など）を使う
例: 「この3つの条件を全て満たす数は？」""",
}

PUZZLE_TEMPLATE = """あなたはひらめき型パズルの謎作家です。
「ひらめき」と「論理」で解ける、美しい謎を設計してください。

【絶対ルール】
1. 外部知識（ネット検索、暗記）が必要な問題は禁止
2. player_handout（資料）の情報だけで解けること
3. 謎を解くと「背景理解」と「物語の鍵」が同時に得られること
4. スポットのモチーフと謎が因果的に結びつくこと

【禁止事項】
- 「○○で有名な人物は誰？」「何年に建てられた？」系の暗記クイズ
- スポットと関係ない一般パズルを置いて解説で無理やり結びつける
- 答えが複数通りあり得る曖昧な問題

{{{readability}}}

{{{type_guide}}}

【物語コンテキスト】
{{{story_context}}}

【スポット情報】
- 名前: {{{spot.spot_name}}}
- 概要: {{{spot.spot_summary}}}
- 選択されたfacts:
{{#each facts}}  - {{{this}}}
{{/each}}- テーマタグ: {{{join spot.spot_theme_tags ", "}}}

【出力形式】
以下のJSONを出力してください：
{
  "lore_card": {
    "short_story_text": "物語文（この地点の意味づけ、2-4文）",
    "facts_used": ["fact_1", "fact_2"],
    "player_handout": "プレイヤーに提示する資料（これだけで謎が解ける情報を含む）"
  },
  "puzzle": {
    "type": "{{puzzle_type}}",
    "prompt": "出題文（物語に溶け込む語り口で）",
    "rules": "ルール説明（必要な場合のみ）",
    "answer": "答え",
    "solution_steps": ["ステップ1", "ステップ2", "ステップ3"],
    "hints": ["抽象的なヒント", "具体的なヒント", "ほぼ答えのヒント（救済）"],
    "difficulty": 2
  },
  "reward": {
    "lore_reveal": "謎を解くと分かる背景理解（factsと接続した解説）",
    "plot_key": "物語の鍵（キーワード/暗号片/数字など）",
    "next_hook": "次のスポットへ行きたくなる一文"
  },
  "linking_rationale": "なぜこの謎がこのスポットである必然性があるか（1-2文、スポット名を含める）"
}"""


# ── Stage 3b: meta puzzle ────────────────────────────────

META_PUZZLE_TEMPLATE = """あなたはひらめき型パズルの謎作家です。
これまでのスポットで集めた「鍵」を全て使って解く、最終謎を作成してください。

【物語の真相】
{{{final_reveal}}}

【集めた鍵】
{{{json plot_keys}}}

【出力形式】
{
  "prompt": "最終謎の出題文（全ての鍵を使う）",
  "answer": "答え",
  "explanation": "真相との接続（なぜこの答えが物語の結末に繋がるか）"
}

【重要】
- 全てのplot_keyを使うこと
- 答えは鍵の組み合わせから導けること
- 答えは物語の真相と一致すること"""


# ── Title + player preview ───────────────────────────────

TITLE_TEMPLATE = """以下の物語に相応しい、魅力的なクエストタイトルを1つだけ生成してください。

【タイトルルール】
- 日本語。映画予告編のように一瞬で引き込む
- 舞台や異変の気配が伝わる言葉を入れる
- 説明文やサブタイトルは不要
- 1行で出力する

【物語の概要】
{{{plot.premise}}}
{{{plot.goal}}}
{{{plot.antagonist_or_mystery}}}

【元のリクエスト】
{{{prompt}}}

{{#if context}}【旅の条件・世界観】
{{{context}}}

{{/if}}タイトルだけを出力してください（JSON不要）。"""

PREVIEW_TEMPLATE = """あなたは、プレイヤーが「やってみたい！」と思えるクエスト紹介文を作る専門家です。

【重要ルール：ネタバレ禁止】
- 謎の問題文・答え・ヒントの具体は絶対に書かない
- 「どう解くか」ではなく「何が起きるか」だけを書く
- 「固有名詞＋動詞＋現象」で具体的に書く

【クエスト情報（制作用データ：プレビューには直接出さない）】
タイトル：{{{title}}}
物語：{{{plot.premise}}}
目的：{{{plot.goal}}}
スポット数：{{spot_count}}箇所
スポット名：{{{join spot_names "、"}}}
難易度：{{difficulty_label}}

{{#if context}}【旅の条件・世界観】
{{{context}}}

{{/if}}【出力するJSON（日本語）】
{
  "one_liner": "30〜45文字のキャッチコピー",
  "trailer": "250〜380文字の導入文",
  "mission": "あなたは◯◯して最後に◯◯を突き止める（1行）",
  "teasers": ["体験の予告1", "体験の予告2", "体験の予告3"],
  "summary_actions": ["歩く", "集める", "照合する"],
  "difficulty_reason": "難易度の理由（1〜2行）",
  "weather_note": "雨天OK/雨天注意/屋外多め など",
  "highlight_spots": [{"name": "スポット名", "teaser_experience": "ここで◯◯すると△△が見える"}],
  "tags": ["ミステリー好き", "初心者OK"]
}

JSONのみ出力してください。"""


# ── Evidence-grounded single puzzle ──────────────────────

GROUNDED_RULES = """あなたはプロフェッショナルな謎解きゲームデザイナーです。
位置連動型ミステリークエストの謎を設計します。

【絶対ルール - 違反は許されません】
1. 提供された「根拠データ」に含まれる情報のみを使用すること
2. 推測や「たぶんある」「おそらく」は完全に禁止
3. 季節やイベントで変わる一時的な情報は禁止
4. 答えは一意でなければならない（複数の正解が出ない）
5. 現地で実際に観測できる手掛かりに基づくこと

【謎の品質基準】
- 現地に行けば必ず手掛かりが存在し正解に到達できる
- 物語/場所との結びつきが強い
- ただのトリビアクイズではなく、現地で見て解ける謎
- 「謎→手掛かり→答え」の必然性・美しさ

【禁止事項】
- 「周辺を探してみてください」のような曖昧な指示
- 店員への質問が必須の情報
- 季節展示、ポスター、メニューなど変動する情報
- ネット検索でしか答えられない謎"""

GENERAL_KNOWLEDGE_RULES = """あなたはプロフェッショナルな謎解きゲームデザイナーです。
指定された場所に関する謎を設計します。

【重要】
- 場所の一般的な知識や特徴を活用して謎を作成してください
- 現地で観察すれば答えがわかる謎を設計してください
- 難しすぎず、現地体験を楽しめる謎にしてください

【禁止事項】
- インターネット検索が必須の謎
- 専門知識が必要な謎
- 季節やイベントに依存する情報"""

GROUNDED_DIFFICULTY_GUIDES: dict[str, str] = {
    "easy": "初級: 簡単な観察や文字の読み取り。ヒントを見れば誰でも解ける。",
    "medium": "中級: 少しの推理や計算が必要。現地で10分程度考える。",
    "hard": "上級: 複合的な思考や発見が必要。やりがいのある謎解き。",
}

GENERAL_KNOWLEDGE_DIFFICULTY_GUIDES: dict[str, str] = {
    "easy": "初級: 簡単な観察。現地で見れば誰でも答えられる。",
    "medium": "中級: 少しの観察と推理が必要。",
    "hard": "上級: 複数の情報を組み合わせる必要がある。",
}

GROUNDED_PUZZLE_TEMPLATE = """{{{rules}}}

【物語コンテキスト】
- クエストタイトル: {{{context.quest_title}}}
- テーマ: {{{context.quest_theme}}}
- スポット: {{context.spot_number}}/{{context.total_spots}}（{{{pack.spot_name}}}）
- 難易度: {{{difficulty_guide}}}
{{#if previous_context}}- 前のスポットの流れ: {{{previous_context}}}
{{/if}}
【このスポットの根拠データ】
{{{json evidence}}}

【出力形式】
必ず以下のJSON形式で出力してください。根拠が不足している場合は別形式で返してください。

成功時:
{
  "status": "success",
  "puzzle": {
    "puzzle_statement": "プレイヤーに提示する謎の本文（魅力的で物語に沿った文章）",
    "on_site_instruction": "現地で具体的に何を見ればいいか（例：入口右手の案内板の3行目を確認）",
    "evidence_used": [
      {"evidence_id": "使用した根拠のID", "source_url": "出典URL", "usage": "この根拠をどう使ったか"}
    ],
    "solution_steps": ["解法ステップ1: ○○を確認する", "解法ステップ2: △△を読み取る", "解法ステップ3: 答えは□□"],
    "answer": "正解（一意）",
    "acceptable_answers": ["別の表記法", "略称"],
    "hints": ["ヒント1: 少しだけ方向を示す（答えは含めない）", "ヒント2: より具体的なヒント（答えは含めない）"],
    "final_rescue": "show_answer",
    "success_message": "正解時のメッセージ（次のスポットへの導入を含む）",
    "narrative_link": "なぜこの場所でこの謎なのか、物語上の意味"
  }
}

根拠不足時:
{
  "status": "needs_more_evidence",
  "missing_evidence": ["不足している情報1（例：看板のテキスト）", "不足している情報2（例：建物の正式名称）"],
  "suggestion": "どのような情報があれば謎を作れるか"
}

重要: evidence_used には必ず上記の根拠データから使用したものを記載してください。
根拠データにない情報を使った謎は作成しないでください。"""

GENERAL_KNOWLEDGE_PUZZLE_TEMPLATE = """{{{rules}}}

【物語コンテキスト】
- クエストタイトル: {{{context.quest_title}}}
- テーマ: {{{context.quest_theme}}}
- スポット: {{context.spot_number}}/{{context.total_spots}}（{{{pack.spot_name}}}）
- 難易度: {{{difficulty_guide}}}

【スポット情報】
- 名前: {{{pack.spot_name}}}
- 説明: {{{description}}}
- 座標: {{pack.lat}}, {{pack.lng}}

【出力形式】
以下のJSON形式で出力してください:
{
  "status": "success",
  "puzzle": {
    "puzzle_statement": "謎の本文（その場所に関連した魅力的な問題）",
    "on_site_instruction": "現地で何を見ればいいか（具体的に）",
    "evidence_used": [],
    "solution_steps": ["ステップ1", "ステップ2"],
    "answer": "正解",
    "hints": ["ヒント1", "ヒント2"],
    "final_rescue": "show_answer",
    "success_message": "正解時メッセージ",
    "narrative_link": "物語上の意味"
  }
}

この場所の特徴や歴史を活かした、現地で観察すれば答えがわかる謎を作成してください。"""
