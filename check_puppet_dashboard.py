#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
check_puppet_dashboard.py - Icinga/Nagios plugin for Puppet Dashboard.

Fetches the Puppet Dashboard front page, reads the node counts shown for
each status category (unresponsive, failed, pending, changed, unchanged,
unreported) and compares them against per-category warning/critical
thresholds.

Exit codes:
    0 = OK
    1 = WARNING
    2 = CRITICAL
    3 = UNKNOWN
"""

import argparse
import re
import sys
import traceback
from collections import namedtuple
from urllib.parse import urlparse

try:
    import requests
    from requests.auth import AuthBase, HTTPBasicAuth
except ImportError:
    print("UNKNOWN - requests is not installed. Install it with: pip install 'requests>=2.20'")
    sys.exit(3)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

__version__ = "26.10.18"

NAGIOS_OK = 0
NAGIOS_WARNING = 1
NAGIOS_CRITICAL = 2
NAGIOS_UNKNOWN = 3

STATUS_LABELS = {
    NAGIOS_OK: "OK",
    NAGIOS_WARNING: "WARNING",
    NAGIOS_CRITICAL: "CRITICAL",
    NAGIOS_UNKNOWN: "UNKNOWN",
}

SHORTNAME = "PUPPET_DASHBOARD"

# Order matters: -w/-c values map positionally onto this tuple
CATEGORIES = ("unresponsive", "failed", "pending", "changed", "unchanged", "unreported")

DEFAULT_PORT = 80
DEFAULT_REALM = "Puppet Dashboard"

INTEGER_RE = re.compile(r"^[+-]?[0-9]+$")
NODE_LINK_RE = re.compile(r'<a href="/nodes/(\w+)">(\d+)</a>')
BASIC_REALM_RE = re.compile(r'basic\s+realm="([^"]*)"', re.IGNORECASE)
NEGATIVE_LIST_RE = re.compile(r"^-[0-9]")

THRESHOLD_OPTIONS = {
    "-w": "--warning",
    "--warning": "--warning",
    "-c": "--critical",
    "--critical": "--critical",
}


ThresholdPair = namedtuple("ThresholdPair", ["warning", "critical"])


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ThresholdError(ValueError):
    """Base class for -w/-c/-p validation failures."""


class InvalidFormat(ThresholdError):
    """A threshold or port token is not an integer."""


class WrongArity(ThresholdError):
    """A threshold list does not have one value per category."""


class ThresholdOrderViolation(ThresholdError):
    """A warning value is not strictly below its critical value."""


class TransportFailure(Exception):
    """The dashboard could not be fetched."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# IcingaOutput — formats plugin output
# ---------------------------------------------------------------------------

class IcingaOutput:
    """Formats output compliant with Icinga/Nagios plugin specification."""

    # UNKNOWN beats OK, but never hides a WARNING or CRITICAL
    _RANK = {NAGIOS_OK: 0, NAGIOS_UNKNOWN: 1, NAGIOS_WARNING: 2, NAGIOS_CRITICAL: 3}

    def __init__(self, shortname=SHORTNAME):
        self.shortname = shortname
        self.status = NAGIOS_OK
        self.messages = []
        self.perfdata = []
        self.long_output = []

    def set_status(self, status):
        """Escalate to status if it ranks above the current one."""
        if self._RANK[status] > self._RANK[self.status]:
            self.status = status

    def add_message(self, status, message):
        """Add a summary message and escalate status if needed."""
        self.set_status(status)
        self.messages.append(message)

    def add_perfdata(self, label, value, uom="", warn="", crit="", min_val="", max_val=""):
        """Add performance data in Nagios format: label=value[UOM];warn;crit;min;max."""
        if " " in label:
            label = f"'{label}'"
        self.perfdata.append(f"{label}={value}{uom};{warn};{crit};{min_val};{max_val}")

    def add_long_output(self, line):
        """Add a line to the long (multi-line) output."""
        self.long_output.append(line)

    def get_output(self):
        """Return the formatted plugin output string."""
        status_label = STATUS_LABELS.get(self.status, "UNKNOWN")
        summary = ", ".join(self.messages) if self.messages else "No issues detected"
        first_line = f"{status_label} - {summary}"
        if self.shortname:
            first_line = f"{self.shortname} {first_line}"
        if self.perfdata:
            first_line += " | " + " ".join(self.perfdata)
        return "\n".join([first_line] + self.long_output)

    def exit(self):
        """Print output and exit with appropriate code."""
        print(self.get_output())
        sys.exit(self.status)


# ---------------------------------------------------------------------------
# Threshold validation
# ---------------------------------------------------------------------------

def split_threshold_list(value):
    """argparse type: '1,2,3' -> ['1', '2', '3']. Tokens are validated later."""
    return value.split(",")


def _parse_integer(token, option):
    token = token.strip()
    if not INTEGER_RE.match(token):
        raise InvalidFormat(f"{option} value '{token}' is not an integer")
    return int(token)


def validate_arguments(warning_tokens, critical_tokens, port_token):
    """Validate the -w/-c lists and the -p token.

    Returns (thresholds, port) where thresholds maps each category to a
    ThresholdPair, in CATEGORIES order.

    Raises InvalidFormat, WrongArity or ThresholdOrderViolation, checked in
    that order over all inputs.
    """
    warning = [_parse_integer(t, "--warning") for t in warning_tokens]
    critical = [_parse_integer(t, "--critical") for t in critical_tokens]
    port = _parse_integer(str(port_token), "--port")

    for option, values in (("--warning", warning), ("--critical", critical)):
        if len(values) != len(CATEGORIES):
            raise WrongArity(
                f"{option} needs {len(CATEGORIES)} comma-separated values "
                f"({','.join(CATEGORIES)}), got {len(values)}"
            )

    thresholds = {}
    for category, warn, crit in zip(CATEGORIES, warning, critical):
        if warn >= crit:
            raise ThresholdOrderViolation(
                f"warning threshold for {category} ({warn}) must be lower "
                f"than its critical threshold ({crit})"
            )
        thresholds[category] = ThresholdPair(warn, crit)
    return thresholds, port


# ---------------------------------------------------------------------------
# DashboardClient — fetches the status page
# ---------------------------------------------------------------------------

class RealmBasicAuth(AuthBase):
    """Basic auth sent only in answer to a matching 401 challenge.

    Credentials are scoped to one host:port and one realm: a 401 from any
    other netloc, or for any other realm, is returned untouched.
    """

    def __init__(self, username, password, realm, netloc):
        self.username = username
        self.password = password
        self.realm = realm
        self.netloc = netloc

    def matches(self, response):
        """True if response is a 401 challenge for our netloc and realm."""
        if response.status_code != 401:
            return False
        if urlparse(response.url).netloc != self.netloc:
            return False
        challenge = BASIC_REALM_RE.search(response.headers.get("www-authenticate", ""))
        return challenge is not None and challenge.group(1) == self.realm

    def handle_401(self, r, **kwargs):
        """Replay the request once with an Authorization header."""
        if not self.matches(r) or "Authorization" in r.request.headers:
            return r

        # Drain the challenge so the connection can be reused
        r.content
        r.close()
        prep = r.request.copy()
        HTTPBasicAuth(self.username, self.password)(prep)
        _r = r.connection.send(prep, **kwargs)
        _r.history.append(r)
        _r.request = prep
        return _r

    def __call__(self, r):
        r.register_hook("response", self.handle_401)
        return r


class DashboardClient:
    """Fetches the Puppet Dashboard front page."""

    def __init__(self, host, port=DEFAULT_PORT, ssl=False, username=None,
                 password=None, realm=DEFAULT_REALM):
        self.host = host
        self.port = port
        self.ssl = ssl
        self.username = username
        self.password = password
        self.realm = realm

    @property
    def netloc(self):
        return f"{self.host}:{self.port}"

    @property
    def url(self):
        scheme = "https" if self.ssl else "http"
        return f"{scheme}://{self.netloc}/"

    def _build_request_kwargs(self):
        """Build keyword arguments for Session.get."""
        kwargs = {}
        if self.username and self.password:
            kwargs["auth"] = RealmBasicAuth(self.username, self.password,
                                            self.realm, self.netloc)
        return kwargs

    def fetch(self):
        """GET the dashboard once and return the response.

        Raises TransportFailure on connection errors and non-2xx statuses.
        """
        session = requests.Session()
        try:
            response = session.get(self.url, **self._build_request_kwargs())
        except requests.RequestException as e:
            raise TransportFailure(f"Cannot fetch {self.url}: {e}")
        finally:
            session.close()

        if not 200 <= response.status_code < 300:
            raise TransportFailure(f"{response.status_code} {response.reason}",
                                   status_code=response.status_code)
        return response


# ---------------------------------------------------------------------------
# Extraction and evaluation
# ---------------------------------------------------------------------------

def extract_node_counts(text):
    """Scrape '<a href="/nodes/NAME">COUNT</a>' links, one per line.

    Later matches for the same name overwrite earlier ones. Names outside
    CATEGORIES are kept but never evaluated.
    """
    counts = {}
    for line in text.split("\n"):
        match = NODE_LINK_RE.search(line)
        if match:
            counts[match.group(1)] = int(match.group(2))
    return counts


def evaluate_thresholds(node_counts, thresholds):
    """Return (status, detail) for the given counts.

    The detail string lists every category at or above its warning value.
    Severity is evaluated in a second pass which stops at the first
    CRITICAL, so both passes must stay separate.
    """
    detail = ""
    for category in CATEGORIES:
        count = node_counts.get(category, 0)
        if count >= thresholds[category].warning:
            detail += f"{category} = {count}; "

    status = NAGIOS_OK
    for category in CATEGORIES:
        count = node_counts.get(category, 0)
        pair = thresholds[category]
        if status not in (NAGIOS_WARNING, NAGIOS_CRITICAL) and count >= pair.warning:
            status = NAGIOS_WARNING
        if count >= pair.critical:
            status = NAGIOS_CRITICAL
        if status == NAGIOS_CRITICAL:
            break

    return status, detail


# ---------------------------------------------------------------------------
# DashboardChecker
# ---------------------------------------------------------------------------

class DashboardChecker:
    """Runs fetch -> extract -> evaluate and fills an IcingaOutput."""

    def __init__(self, client, output, thresholds, verbose=False):
        self.client = client
        self.output = output
        self.thresholds = thresholds
        self.verbose = verbose

    def check(self):
        try:
            response = self.client.fetch()
        except TransportFailure as e:
            self.output.add_message(NAGIOS_UNKNOWN, str(e))
            return

        if self.verbose:
            self.output.add_long_output(
                f"[INFO] GET {self.client.url} -> {response.status_code} "
                f"({len(response.text)} chars)"
            )

        counts = extract_node_counts(response.text)
        if self.verbose:
            self.output.add_long_output(
                "[DEBUG] Extracted counts: "
                + ", ".join(f"{name}={count}" for name, count in counts.items())
            )
            for category in CATEGORIES:
                if category not in counts:
                    self.output.add_long_output(
                        f"[INFO] Category '{category}' not found on dashboard, counted as 0"
                    )
            extra = sorted(set(counts) - set(CATEGORIES))
            if extra:
                self.output.add_long_output(
                    f"[DEBUG] Ignored node links: {', '.join(extra)}"
                )

        status, detail = evaluate_thresholds(counts, self.thresholds)
        if detail:
            self.output.add_message(status, detail.rstrip())
        else:
            self.output.set_status(status)

        for category in CATEGORIES:
            pair = self.thresholds[category]
            self.output.add_perfdata(category, counts.get(category, 0), "",
                                     pair.warning, pair.critical, 0)


# ---------------------------------------------------------------------------
# Argument Parsing
# ---------------------------------------------------------------------------

class NagiosArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors as UNKNOWN (exit 3) on stdout."""

    def error(self, message):
        print(f"{SHORTNAME} UNKNOWN - Bad arguments (see --help): {message}")
        sys.exit(NAGIOS_UNKNOWN)


def _join_negative_thresholds(argv):
    """Rewrite '-w -1,2,...' as '--warning=-1,2,...'.

    argparse takes a separate value starting with '-' for an option string
    unless it is a single number, so a list led by a negative value would be
    rejected before validation.
    """
    joined = []
    i = 0
    while i < len(argv):
        option = THRESHOLD_OPTIONS.get(argv[i])
        if option and i + 1 < len(argv) and NEGATIVE_LIST_RE.match(argv[i + 1]):
            joined.append(f"{option}={argv[i + 1]}")
            i += 2
        else:
            joined.append(argv[i])
            i += 1
    return joined


def parse_arguments(argv=None):
    """Parse command-line arguments."""
    order = ",".join(CATEGORIES)
    parser = NagiosArgumentParser(
        description="Icinga/Nagios plugin for Puppet Dashboard node status",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Threshold lists take one integer per category, in this order:
  {order}

A category at or above its warning value is listed in the output; any
category at or above its critical value makes the check CRITICAL.

Examples:
  # Plain HTTP dashboard on port 3000
  %(prog)s -H puppet.example.com -p 3000 -w 1,1,10,50,1000,5 -c 5,5,50,100,2000,20

  # HTTPS with basic auth
  %(prog)s -H puppet.example.com -p 443 -s -U nagios -P secret \\
           -w 1,1,10,50,1000,5 -c 5,5,50,100,2000,20

Exit codes:
  0 = OK       - All categories below their warning threshold
  1 = WARNING  - At least one category at or above its warning threshold
  2 = CRITICAL - At least one category at or above its critical threshold
  3 = UNKNOWN  - Bad arguments, dashboard unreachable or HTTP error
        """
    )

    parser.add_argument("-V", "--version", action="version",
                        version=f"%(prog)s {__version__}")

    # Connection
    parser.add_argument("-H", "--host", required=True,
                        help="Puppet Dashboard hostname or IP address")
    parser.add_argument("-p", "--port", default=str(DEFAULT_PORT),
                        help=f"Puppet Dashboard port (default: {DEFAULT_PORT})")
    parser.add_argument("-s", "--ssl", action="store_true", default=False,
                        help="Use https instead of http")
    parser.add_argument("-U", "--httpuser", default=None,
                        help="Username for HTTP basic authentication")
    parser.add_argument("-P", "--httppass", default=None,
                        help="Password for HTTP basic authentication")
    parser.add_argument("-r", "--realm", default=DEFAULT_REALM,
                        help=f"Basic authentication realm (default: '{DEFAULT_REALM}')")

    # Thresholds
    parser.add_argument("-w", "--warning", required=True, type=split_threshold_list,
                        metavar="LIST", help=f"Warning thresholds ({order})")
    parser.add_argument("-c", "--critical", required=True, type=split_threshold_list,
                        metavar="LIST", help=f"Critical thresholds ({order})")

    parser.add_argument("-v", "--verbose", action="store_true", default=False,
                        help="Enable verbose output for debugging")

    if argv is None:
        argv = sys.argv[1:]
    return parser.parse_args(_join_negative_thresholds(argv))


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv=None):
    """Main entry point."""
    output = IcingaOutput()
    verbose = False

    try:
        args = parse_arguments(argv)
        verbose = args.verbose

        try:
            thresholds, port = validate_arguments(args.warning, args.critical, args.port)
        except ThresholdError as e:
            output.add_message(NAGIOS_UNKNOWN, str(e))
            output.exit()

        client = DashboardClient(
            host=args.host,
            port=port,
            ssl=args.ssl,
            username=args.httpuser,
            password=args.httppass,
            realm=args.realm,
        )
        checker = DashboardChecker(
            client=client,
            output=output,
            thresholds=thresholds,
            verbose=verbose,
        )
        checker.check()

    except SystemExit:
        # argparse and output.exit() call sys.exit
        raise
    except Exception as e:
        output.add_message(NAGIOS_UNKNOWN, f"Plugin error: {e}")
        if verbose:
            output.add_long_output(traceback.format_exc())

    output.exit()


if __name__ == "__main__":
    main()
