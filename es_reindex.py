#!/usr/bin/env python3
# es_reindex.py
# Shrink/reindex Elasticsearch indexes, one background _reindex task at a time.
# Usage: python3 es_reindex.py -i my_index_2020- -l "01 02 03" [-y]
#        python3 es_reindex.py -i my_index_2020- -n my_new_index_2020
# Requires: pip install requests
#
# Preferably run under nohup so the job survives a lost ssh session:
#   nohup python3 es_reindex.py -i j0nix_2023 -l "01 02 03 04" -y > reindex.log &

import argparse
import logging
import sys
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import requests

from es_http import ConfigError, EsClient, EsRequestError, normalize_host, setup_logging

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://127.0.0.1:9200"
DEFAULT_ITERATIONS = [f"{m:02d}" for m in range(1, 13)]
SHRUNK_SUFFIX = "-shrunk"
POLL_SECS = 30
START_PAUSE_SECS = 1


class ReindexFailure(RuntimeError):
    pass


# ------------------- plan -------------------
def build_plan(index_pattern: str,
               iterations: Optional[Union[str, Iterable[str]]] = None,
               new_index: Optional[str] = None) -> List[Tuple[str, str]]:
    """
    Source/destination pairs for the run.

    With new_index everything matching the pattern lands in that one index,
    otherwise every iteration token gets its own '<pattern><x>-shrunk' index.
    """
    if not index_pattern:
        raise ConfigError("index pattern is required")
    if new_index:
        return [(f"{index_pattern}*", new_index)]
    if iterations is None:
        iterations = DEFAULT_ITERATIONS
    elif isinstance(iterations, str):
        iterations = iterations.split()
    plan = [(f"{index_pattern}{x}*", f"{index_pattern}{x}{SHRUNK_SUFFIX}")
            for x in iterations]
    if not plan:
        raise ConfigError("iteration pattern is empty")
    return plan


def confirm(prompt: str = "Do you wish to proceed? ",
            answer: Callable[[str], str] = input) -> bool:
    while True:
        yn = answer(prompt).strip()
        if yn[:1] in ("y", "Y"):
            return True
        if yn[:1] in ("n", "N"):
            return False
        print("Please answer yes or no.")


# ------------------- _reindex / _tasks -------------------
def start_reindex(client: EsClient, source: str, dest: str) -> str:
    logger.info("[ START ][ %s -> %s ]", source, dest)
    body = {
        "source": {"index": source},
        "dest": {"index": dest},
        # fresh document ids in the destination
        "script": {"source": "ctx._id=null", "lang": "painless"},
    }
    js = client.req("POST", "/_reindex?wait_for_completion=false", json=body).json()
    task_id = js.get("task") if isinstance(js, dict) else None
    if not task_id:
        raise ReindexFailure(f"no task id returned for {source} -> {dest}: {js}")
    logger.info("[ Elastic task id: %s ]", task_id)
    return task_id


def task_completed(status) -> bool:
    return isinstance(status, dict) and status.get("completed") is True


def poll_task(client: EsClient, task_id: str, interval: float = POLL_SECS,
              sleep: Callable[[float], None] = time.sleep) -> Dict:
    """Poll _tasks until the task completes; raise when it reports failures."""
    while True:
        status = client.req("GET", f"/_tasks/{task_id}").json()
        completed = task_completed(status)
        logger.info("[ %s @ %s ] Completed: %s", task_id,
                    time.strftime("%H:%M:%S"), str(completed).lower())
        if completed:
            failures = (status.get("response") or {}).get("failures") or []
            if failures:
                description = (status.get("task") or {}).get("description", "")
                raise ReindexFailure(f"!!FAILURE!! {description}\n{failures}")
            return status
        sleep(interval)


def run(client: EsClient, plan: List[Tuple[str, str]], assume_yes: bool = False,
        interval: float = POLL_SECS, pause: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        answer: Callable[[str], str] = input) -> Optional[List[str]]:
    """
    Reindex every pair of the plan sequentially.

    Returns the finished task ids, or None when the operator declined.
    """
    logger.info("[ Executing reindex request ]")
    for source, dest in plan:
        logger.info("  - %s -> %s", source, dest)
    if not assume_yes and not confirm(answer=answer):
        logger.warning("Abort, Abort !!")
        return None
    done = []
    for source, dest in plan:
        if pause:
            sleep(START_PAUSE_SECS)
        task_id = start_reindex(client, source, dest)
        poll_task(client, task_id, interval=interval, sleep=sleep)
        done.append(task_id)
    return done


# ------------------- main -------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        'es-reindex', add_help=False,
        description='Shrink/reindex Elasticsearch indexes '
                    '(https://www.elastic.co/guide/en/elasticsearch/reference/current/docs-reindex.html)',
        epilog='Without -n or -l the default iterations 01 .. 12 are used. '
               'Destination is <index><x>-shrunk, or the -n index.')
    parser.add_argument('-i', '--index', required=True,
                        help='index pattern to match, ex) my_index_2020-')
    parser.add_argument('-l', '--loop', default=None,
                        help='iteration pattern in index name, ex) "01 02" (default 01 .. 12)')
    parser.add_argument('-n', '--new-index', default=None,
                        help='new index name; disables -l')
    parser.add_argument('-h', '--host', default=DEFAULT_HOST,
                        help='elasticsearch host, may embed user:pwd@ (default %(default)s)')
    parser.add_argument('-y', '--yes', default=False, action='store_true',
                        help='disables interactive mode')
    parser.add_argument('--interval', default=POLL_SECS, type=float,
                        help='seconds between task polls (default %(default)s)')
    parser.add_argument('--verify', dest='insecure', action='store_false',
                        help='verify TLS certificates (default: not verified)')
    parser.set_defaults(insecure=True)
    parser.add_argument('-v', '--verbose', default=False, action='store_true')
    parser.add_argument('--help', action='help', help='show this help message and exit')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        plan = build_plan(args.index, args.loop, args.new_index)
        url, auth = normalize_host(args.host)
        client = EsClient(url, auth=auth, verify=not args.insecure)
        done = run(client, plan, assume_yes=args.yes, interval=args.interval,
                   pause=not args.new_index)
    except (ConfigError, EsRequestError, ReindexFailure, requests.RequestException) as e:
        logger.error("%s", e)
        return 1
    if done is not None:
        logger.info("Well ... that's all folks! (%d task(s))", len(done))
    return 0


if __name__ == "__main__":
    sys.exit(main())
