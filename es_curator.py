#!/usr/bin/env python3
# es_curator.py
# Evaluate & delete indexes in an ES cluster from a JSON policy; afterwards
# force merge (optimize) and/or reroute the indexes that are kept.
# Expects indexes by date, like => INDEX-2015.01.01
# Usage: python3 es_curator.py [-t] [-s] [-n node] [-c config.json] [-x credentials]
# Requires: pip install requests

import argparse
import json
import logging
import logging.handlers
import operator
import re
import sys
from datetime import date
from typing import Dict, List, NamedTuple, Optional, Tuple

import requests

from es_http import (ConfigError, DEFAULT_PORT, EsClient, EsRequestError,
                     read_credentials, setup_logging)

logger = logging.getLogger(__name__)

# ------------------- CONFIG -------------------
DEFAULT_CONFIG = "/etc/index_curator.json"
DEFAULT_NODE = "localhost"
DEFAULT_IGNORE = ["kibana", "marvel", ".kibana", ".marvel", ".monitoring", ".watcher"]
DEFAULT_OPTIMIZE = ("gt", 30)    # shown in help; optimize only runs when configured
DEFAULT_REPLICAS = 1
FORCEMERGE_BATCH = 3             # index references per _forcemerge request
SYSLOG_IDENT = "INDEX_CURATOR"
SYSLOG_FACILITY = logging.handlers.SysLogHandler.LOG_LOCAL0
# ---------------------------------------------

OPERATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "ge": operator.ge,
    "lt": operator.lt,
    "le": operator.le,
}

INDEX_RE = re.compile(r"^(\S+)-([0-9]{4})\.([0-9]{2})\.([0-9]{2})")


class Condition(NamedTuple):
    operator: str
    days: int


class RerouteCondition(NamedTuple):
    operator: str
    days: int
    attr: str
    attr_value: str
    replicas: int = DEFAULT_REPLICAS


class Policy(NamedTuple):
    index_lifetime: Dict[str, int]
    ignore_index: List[str]
    optimize: Optional[Condition] = None
    reroute: Optional[RerouteCondition] = None


class Report:
    def __init__(self):
        self.deleted: List[Tuple[str, Optional[int]]] = []  # (index, age); age None for unknown
        self.kept: List[str] = []
        self.optimize: List[str] = []
        self.reroute: List[str] = []
        self.ignored: List[str] = []
        self.unexpected: List[str] = []
        self.failed: List[str] = []
        self.failed_optimize: List[str] = []
        self.failed_reroute: List[str] = []

    @property
    def deleted_names(self) -> List[str]:
        return [name for name, _ in self.deleted]


# ------------------- policy -------------------
def strip_comments(text: str) -> str:
    return re.sub(r"^#.*", "", text, flags=re.MULTILINE)


def parse_policy(config: Dict) -> Policy:
    if not isinstance(config, dict) or not isinstance(config.get("index_lifetime"), dict):
        raise ConfigError("index_lifetime is not defined in configfile")
    lifetime = {k: _days(v, f"index_lifetime.{k}") for k, v in config["index_lifetime"].items()}

    ignore = config.get("ignore_index")
    if ignore is None:
        ignore = list(DEFAULT_IGNORE)
    elif not isinstance(ignore, list):
        raise ConfigError("ignore_index must be a list of index name patterns")
    else:
        ignore = [str(i) for i in ignore]
    for pattern in ignore:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ConfigError(f"ignore_index pattern '{pattern}' is not a valid regexp: {e}") from e

    opt_cfg = _section(config, "optimize_condition")
    optimize = None
    if opt_cfg.get("operator") is not None and opt_cfg.get("days") is not None:
        optimize = Condition(str(opt_cfg["operator"]), _days(opt_cfg["days"], "optimize_condition"))

    rr_cfg = _section(config, "reroute_condition")
    reroute = None
    if all(rr_cfg.get(k) is not None for k in ("operator", "days", "attr", "attr_value")):
        replicas = rr_cfg.get("replicas")
        reroute = RerouteCondition(
            str(rr_cfg["operator"]), _days(rr_cfg["days"], "reroute_condition"),
            str(rr_cfg["attr"]), str(rr_cfg["attr_value"]),
            DEFAULT_REPLICAS if replicas is None else _days(replicas, "reroute_condition.replicas"))
    return Policy(lifetime, ignore, optimize, reroute)


def _section(config: Dict, key: str) -> Dict:
    value = config.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{key} must be an object")
    return value


def _days(value, where: str) -> int:
    """Whole number of days; '7' and 7.0 are fine, 7.5 and true are not."""
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ConfigError(f"{where}: '{value}' is not a whole number")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{where}: '{value}' is not a whole number") from e


def load_policy(path: str) -> Policy:
    try:
        with open(path) as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"'{path}' not found...") from e
    try:
        config = json.loads(strip_comments(text))
    except ValueError as e:
        raise ConfigError(f"got error when parsing json config file {path}: {e}") from e
    try:
        return parse_policy(config)
    except ConfigError as e:
        raise ConfigError(f"{e} {path} ... Aborting") from e


def describe_policy(policy: Policy, path: str = "") -> str:
    line = f"configfile: {path} - ignore_index: {','.join(policy.ignore_index)}"
    if policy.optimize:
        line += (f" - optimize indexes based on condition: "
                 f"{policy.optimize.operator} {policy.optimize.days} days")
    if policy.reroute:
        r = policy.reroute
        line += (f" - reroute indexes based on condition {r.operator} {r.days} days, "
                 f"require {r.attr}: {r.attr_value}")
    return line


# ------------------- evaluation -------------------
def compare(op: str, age: int, threshold: int) -> bool:
    try:
        return OPERATORS[op](age, threshold)
    except KeyError:
        raise ConfigError(
            f"could not match operator '{op}' with any of eq, ne, gt, ge, lt or le") from None


def parse_index(name: str) -> Optional[Tuple[str, date]]:
    m = INDEX_RE.match(name)
    if not m:
        return None
    try:
        return m.group(1), date(int(m.group(2)), int(m.group(3)), int(m.group(4)))
    except ValueError:
        return None


def index_age(index_date: date, today: date) -> int:
    return abs((today - index_date).days)


def is_ignored(name: str, patterns: List[str]) -> Optional[str]:
    """Return the first ignore pattern matching the start of name."""
    for pattern in patterns:
        if re.match(pattern, name):
            return pattern
    return None


def _queue_if(report_list: List[str], index: str, op: str, age: int,
              threshold: int, action: str):
    try:
        if compare(op, age, threshold):
            report_list.append(index)
    except ConfigError as e:
        logger.error("Error in %s condition, %s, ignore %s of index %s",
                     action, e, action, index)


def evaluate(indices, policy: Policy, today: date) -> Report:
    """Decide delete/keep/optimize/reroute for every index; sends nothing."""
    report = Report()
    last = None
    for index in sorted(indices):
        pattern = is_ignored(index, policy.ignore_index)
        if pattern is not None:
            logger.info("%s matches %s from ignore list", index, pattern)
            report.ignored.append(index)
            continue

        parsed = parse_index(index)
        if parsed is None:
            logger.warning("ALERT - Unexpected index format %s (No action on this index), "
                           "need to update ignore_index config?", index)
            report.unexpected.append(index)
            continue

        name, index_date = parsed
        age = index_age(index_date, today)
        lifetime = policy.index_lifetime.get(name)
        if lifetime is None:
            logger.info("Unknown index %s, not defined in configuration or in the ignore list. "
                        "%s will be DELETED...", index, index)
            report.deleted.append((index, None))
            continue

        if name != last:
            last = name
            logger.info("Configuration defines that we keep %s for %d days", name, lifetime)

        if lifetime < age:
            report.deleted.append((index, age))
            continue

        logger.info("Keeping index %s (%d)", index, age)
        report.kept.append(index)
        if policy.optimize:
            _queue_if(report.optimize, index, policy.optimize.operator, age,
                      policy.optimize.days, "optimization")
        if policy.reroute:
            _queue_if(report.reroute, index, policy.reroute.operator, age,
                      policy.reroute.days, "reroute")
    return report


# ------------------- cluster calls -------------------
def fetch_indices(client: EsClient) -> List[str]:
    state = client.req("GET", "/_cluster/state/routing_table").json()
    return list(((state.get("routing_table") or {}).get("indices") or {}).keys())


def chunks(items: List[str], size: int = FORCEMERGE_BATCH) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def reroute_settings(reroute: RerouteCondition) -> Dict:
    return {"index": {
        f"routing.allocation.require.{reroute.attr}": reroute.attr_value,
        "number_of_replicas": reroute.replicas,
    }}


def _send(client: EsClient, what: str, method: str, path: str, **kw) -> bool:
    """Send one action; log and report False on any failure so the run goes on."""
    try:
        resp = client.try_req(method, path, **kw)
    except requests.RequestException as e:
        logger.error("Failed to %s: %s", what, e)
        return False
    if resp.status_code >= 300:
        logger.error("Failed to %s -> %s\n%s", what, resp.status_code, resp.text[:800])
        return False
    return True


def apply(client: EsClient, report: Report, policy: Policy, dry_run: bool = False):
    """Send the deletes, force merges and reroutes decided by evaluate()."""
    for index, age in report.deleted:
        if not dry_run and not _send(client, f"delete index {index}", "DELETE", f"/{index}"):
            report.failed.append(index)
            continue
        logger.info("Deleted index %s (%s)", index, "unknown" if age is None else age)

    if policy.optimize and report.optimize:
        # at most FORCEMERGE_BATCH indices per request
        for batch in chunks(report.optimize):
            joined = ",".join(batch)
            logger.info('OPTIMIZE "%s"', joined)
            if not dry_run and not _send(client, f"optimize {joined}", "POST",
                                         f"/{joined}/_forcemerge?max_num_segments=1"):
                report.failed_optimize.extend(batch)

    if policy.reroute and report.reroute:
        r = policy.reroute
        body = reroute_settings(r)
        for index in report.reroute:
            logger.info("REROUTE: %s routing.allocation.require.%s : %s",
                        index, r.attr, r.attr_value)
            if not dry_run and not _send(client, f"reroute {index}", "PUT",
                                         f"/{index}/_settings", json=body):
                report.failed_reroute.append(index)


def summary(report: Report) -> str:
    feedback = "SCRIPT REPORT;"
    deleted = [i for i in report.deleted_names if i not in report.failed]
    if deleted:
        feedback += " Deleted indexes => " + ";".join(deleted)
    if report.failed:
        feedback += " Failed deletes => " + ";".join(report.failed)
    optimized = [i for i in report.optimize if i not in report.failed_optimize]
    if optimized:
        feedback += " Optimized Indexes=> " + ",".join(optimized)
    if report.failed_optimize:
        feedback += " Failed optimize => " + ",".join(report.failed_optimize)
    rerouted = [i for i in report.reroute if i not in report.failed_reroute]
    if rerouted:
        feedback += " Rerouted Indexes=> " + ",".join(rerouted)
    if report.failed_reroute:
        feedback += " Failed reroute => " + ",".join(report.failed_reroute)
    return feedback


# ------------------- main -------------------
EXPLAIN = """
:: CONFIG FILE EXPLANATION

  The curator keeps indexes searchable for the number of days configured per
  index name (the part before the -YYYY.MM.DD suffix). Indexes whose name is
  not configured, and not ignored, are deleted. Kept indexes can be force
  merged (optimized) and rerouted to other nodes, e.g. for a hot/warm setup.

  REQUIRED => index_lifetime

      { "index_lifetime": { "indexname_without_date_suffix": nr_of_days_to_keep } }

  OPTIONAL => ignore_index, regular expressions matched at the start of the
  index name; such indexes are never evaluated.

      "ignore_index": [ "kibana", ".kibana", ".marvel" ]

  OPTIONAL => optimize_condition; operator (eq, ne, gt, ge, lt or le) and
  days, the age of the index from the date in its name.

      "optimize_condition": { "operator": "ge", "days": 1 }

  OPTIONAL => reroute_condition; operator, days, the node attribute to
  require (node.attr.box_type in elasticsearch.yml) and its value. Rerouted
  indexes get 'replicas' replicas, 1 by default.

      "reroute_condition": {
          "operator": "eq", "days": 5,
          "attr": "box_type", "attr_value": "warm", "replicas": 0
      }

  Lines starting with # are treated as comments.
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        'es-curator',
        description='Evaluate & delete dated indexes in an Elasticsearch cluster, '
                    'then optionally force merge and reroute the kept ones.',
        epilog=f"Defaults: ignore_index {','.join(DEFAULT_IGNORE)}; "
               f"optimize condition {DEFAULT_OPTIMIZE[0]} {DEFAULT_OPTIMIZE[1]} (when configured); "
               f"reroute has no default but defaults to {DEFAULT_REPLICAS} replica.")
    parser.add_argument('-c', '--config', default=DEFAULT_CONFIG,
                        help='configuration file (default %(default)s)')
    parser.add_argument('-n', '--node', default=DEFAULT_NODE,
                        help='node/host to execute API calls to (default %(default)s)')
    parser.add_argument('--port', default=DEFAULT_PORT, type=int,
                        help='elasticsearch http port (default %(default)s)')
    parser.add_argument('-s', '--ssl', default=False, action='store_true',
                        help='use ssl/tls, aka https')
    parser.add_argument('-x', '--credentials', default=None,
                        help='path to file with login credentials, formatted user:password')
    parser.add_argument('-t', '--configtest', default=False, action='store_true',
                        help="test the config & review output, don't change the cluster")
    parser.add_argument('-z', '--explain', default=False, action='store_true',
                        help='print extended help about the config file')
    parser.add_argument('--syslog', default=None, nargs='?', const='/dev/log',
                        help='also log to syslog (default address %(const)s)')
    parser.add_argument('-v', '--verbose', default=False, action='store_true')
    return parser


def add_syslog(address: str) -> Optional[logging.Handler]:
    """Mirror the log to syslog; a missing syslog socket only costs a warning."""
    try:
        handler = logging.handlers.SysLogHandler(address=address, facility=SYSLOG_FACILITY)
    except OSError as e:
        logger.warning("syslog unavailable at %s, logging to stderr only: %s", address, e)
        return None
    handler.ident = f"{SYSLOG_IDENT}: "
    handler.setFormatter(logging.Formatter('%(levelname)s %(message)s'))
    logging.getLogger().addHandler(handler)
    return handler


def local_today() -> date:
    return date.today()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.explain:
        print(EXPLAIN)
        return 0
    setup_logging(args.verbose)
    if args.syslog:
        add_syslog(args.syslog)

    report = None
    try:
        policy = load_policy(args.config)
        logger.info(describe_policy(policy, args.config))
        auth = read_credentials(args.credentials) if args.credentials else None
        protocol = "https" if args.ssl else "http"
        client = EsClient(f"{protocol}://{args.node}:{args.port}", auth=auth, verify=False)
        indices = fetch_indices(client)
        report = evaluate(indices, policy, local_today())
        apply(client, report, policy, dry_run=args.configtest)
    except (ConfigError, EsRequestError, requests.RequestException) as e:
        logger.error("%s", e)
        return 1
    finally:
        if report is not None:
            logger.info(summary(report))
    return 0


if __name__ == "__main__":
    sys.exit(main())
