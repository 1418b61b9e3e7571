"""Mystery Walk — API server launcher and one-shot CLI generation."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def _print_progress(event) -> None:
    from mystery_walk.pipeline import ProgressEvent

    if isinstance(event, ProgressEvent):
        state = event.state
        spot = f" spot {state.current_spot_index + 1}/{state.total_spots}" if state.current_spot_index is not None else ""
        print(f"[{state.progress:3d}%] step {state.current_step} {state.step_name}{spot}", file=sys.stderr)


def _generate(args: argparse.Namespace) -> int:
    from mystery_walk.backends import generate_quest
    from mystery_walk.config import config_from_env
    from mystery_walk.models import LatLng, QuestGenerationRequest
    from mystery_walk.storage import QuestStore

    config = config_from_env()
    if args.mode:
        config = config.model_copy(update={"mode": args.mode})

    center = LatLng(lat=args.lat, lng=args.lng) if args.lat is not None and args.lng is not None else None
    request = QuestGenerationRequest(
        prompt=args.prompt,
        difficulty=args.difficulty,
        spot_count=args.spots,
        theme_tags=args.tag or [],
        center_location=center,
        radius_km=args.radius_km,
    )
    result = asyncio.run(generate_quest(request, config, on_event=_print_progress))

    if args.save:
        QuestStore(args.data_dir or config.data_dir).save_quest(result)
    print(result.model_dump_json(indent=2))
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    if args.data_dir:
        os.environ["DATA_DIR"] = str(args.data_dir.resolve())
    print(f"Starting API on http://localhost:{args.port} ...")
    uvicorn.run("mystery_walk.app:create_app", factory=True, host=HOST, port=args.port, reload=args.reload)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Mystery Walk quest generator")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Quest storage directory (default: ./data)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--port", type=int, default=PORT)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=_serve)

    gen = sub.add_parser("generate", help="Generate one quest and print it as JSON")
    gen.add_argument("prompt")
    gen.add_argument("--difficulty", default="medium", choices=["easy", "medium", "normal", "hard"])
    gen.add_argument("--spots", type=int, default=5)
    gen.add_argument("--tag", action="append", help="Theme tag (repeatable)")
    gen.add_argument("--lat", type=float, default=None)
    gen.add_argument("--lng", type=float, default=None)
    gen.add_argument("--radius-km", type=float, default=None)
    gen.add_argument("--mode", choices=["direct", "workflow", "auto"], default=None)
    gen.add_argument("--save", action="store_true", help="Also write the quest to the store")
    gen.set_defaults(func=_generate)

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
