"""Route utterances against a YAML corpus and print each decision as JSON.

    python scripts/simulate_call.py --tenant acme-hvac "what are your hours" "my a/c is broken"
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config.settings import get_settings  # noqa: E402
from frontdesk.core.instrumentation import setup_logging  # noqa: E402
from frontdesk.matching.types import MatchContext  # noqa: E402
from frontdesk.routing.router import build_router  # noqa: E402
from frontdesk.scenarios.store import YamlScenarioStore  # noqa: E402


async def main(args: argparse.Namespace) -> None:
    settings = get_settings()
    setup_logging(args.log_level)
    router = build_router(settings, store=YamlScenarioStore(args.corpus))
    context = MatchContext(channel=args.channel, caller_name=args.caller_name)

    for utterance in args.utterances:
        decision = await router.route(utterance, args.tenant, context)
        print(json.dumps({"utterance": utterance, **decision.model_dump(mode="json")}, indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Simulate caller turns against the scenario engine")
    parser.add_argument("utterances", nargs="+")
    parser.add_argument("--tenant", default="acme-hvac")
    parser.add_argument("--channel", default="voice", choices=["voice", "sms", "chat"])
    parser.add_argument("--caller-name", default=None)
    parser.add_argument("--corpus", default=str(Path(__file__).resolve().parents[1] / "config" / "scenarios.yaml"))
    parser.add_argument("--log-level", default="warning")
    asyncio.run(main(parser.parse_args()))
