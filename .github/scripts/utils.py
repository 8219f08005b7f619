import json
import os
import sys
import struct
import subprocess
import tempfile
import time
import logging
from collections import namedtuple
from datetime import datetime
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger(__name__)

# Constants
GITHUB_API_URL = "https://api.github.com"
API_DELAY = 1.0  # seconds between API calls
RATE_LIMIT_WARNING = 10
TRUNK_BRANCH = os.environ.get('TRUNK_BRANCH', 'main')

REPOSITORIES_DIR = 'repositories'
CATEGORIES_FILE = 'categories.json'
DEVICES_FILE = 'supported-devices.json'

REQUIRED_FIELDS = ['name', 'category', 'description', 'version', 'commit', 'owner', 'repo', 'path']
THEME_CATEGORIES = ('Themes', 'Theme')

PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'

References = namedtuple('References', ['categories', 'devices'])


class ThrottledRetry(Retry):
    """Retry whose backoff never drops below the minimum gap between API calls."""

    def get_backoff_time(self):
        return max(super().get_backoff_time(), API_DELAY)


def load_json(path, default=None):
    """Load JSON file safely."""
    if not os.path.exists(path):
        logger.warning(f"File not found: {path}")
        return [] if default is None else default
    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON {path}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Error reading {path}: {e}")
        sys.exit(1)


def dump_json(data):
    """Serialize data the way every generated file is written."""
    return json.dumps(data, indent=2, ensure_ascii=False) + '\n'


def save_json(path, data):
    """Save JSON file atomically."""
    dir_path = os.path.dirname(path) or '.'
    os.makedirs(dir_path, exist_ok=True)

    try:
        with tempfile.NamedTemporaryFile('w', dir=dir_path, delete=False, encoding='utf-8') as tmp:
            tmp.write(dump_json(data))
            tmp_path = tmp.name

        os.replace(tmp_path, path)
        logger.info(f"Saved {path}")
    except Exception as e:
        logger.error(f"Error saving {path}: {e}")
        if 'tmp_path' in locals() and os.path.exists(tmp_path):
            os.remove(tmp_path)
        sys.exit(1)


def write_json_if_changed(path, data):
    """Write JSON only when the serialized content differs. Returns True if written."""
    if os.path.exists(path):
        with open(path, 'r', encoding='utf-8') as f:
            if f.read() == dump_json(data):
                logger.info(f"Unchanged {path}")
                return False
    save_json(path, data)
    return True


def load_reference_list(path):
    """Load a flat JSON array of strings. Returns None when it can't be used."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Could not load {os.path.basename(path)}: {e}")
        return None
    if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
        logger.error(f"{os.path.basename(path)} must be a JSON array of strings")
        return None
    return data


def load_references(root='.'):
    return References(
        categories=load_reference_list(os.path.join(root, CATEGORIES_FILE)),
        devices=load_reference_list(os.path.join(root, DEVICES_FILE)),
    )


def is_theme(category):
    return category in THEME_CATEGORIES


def compare_versions(v1, v2):
    """Compare dotted versions field by field. Returns 1, 0 or -1."""
    parts1 = [int(p) for p in v1.split('.')]
    parts2 = [int(p) for p in v2.split('.')]
    length = max(len(parts1), len(parts2))
    parts1 += [0] * (length - len(parts1))
    parts2 += [0] * (length - len(parts2))

    for a, b in zip(parts1, parts2):
        if a > b:
            return 1
        if a < b:
            return -1
    return 0


def get_png_dimensions(path):
    """Read (width, height) from the IHDR chunk of a PNG file, or None."""
    try:
        with open(path, 'rb') as f:
            header = f.read(24)
    except OSError:
        return None
    if len(header) < 24 or header[:8] != PNG_SIGNATURE:
        return None
    return struct.unpack('>II', header[16:24])


def write_github_output(**values):
    """Append key=value pairs to $GITHUB_OUTPUT when running in Actions."""
    output_path = os.environ.get('GITHUB_OUTPUT')
    if not output_path:
        return
    with open(output_path, 'a', encoding='utf-8') as fh:
        for key, value in values.items():
            if isinstance(value, bool):
                value = str(value).lower()
            fh.write(f'{key}={value}\n')


class GitHubClient:
    def __init__(self, token=None, min_interval=API_DELAY, session=None):
        self.session = session or requests.Session()
        if session is None:
            retries = ThrottledRetry(total=3, backoff_factor=1, status_forcelist=[429, 500, 502, 503, 504],
                                     raise_on_status=False)
            self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.token = token or os.environ.get('GITHUB_TOKEN')
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "App-Store-Data-Validator"
        }
        if self.token:
            self.headers["Authorization"] = f"Bearer {self.token}"
        self.min_interval = min_interval
        self._last_call = None
        # keyed by owner/repo@sha, kept for the lifetime of the client
        self._commit_cache = {}
        self._tree_cache = {}

    def _throttle(self):
        if self._last_call is not None:
            elapsed = time.monotonic() - self._last_call
            if elapsed < self.min_interval:
                time.sleep(self.min_interval - elapsed)
        self._last_call = time.monotonic()

    def _check_rate_limit(self, response):
        remaining = response.headers.get('X-RateLimit-Remaining')
        if remaining is None:
            return
        try:
            remaining = int(remaining)
        except ValueError:
            return
        if remaining < RATE_LIMIT_WARNING:
            logger.warning(f"⚠️ GitHub API rate limit low: {remaining} calls remaining")
            reset = response.headers.get('X-RateLimit-Reset')
            if reset and reset.isdigit():
                reset_at = datetime.fromtimestamp(int(reset)).strftime('%H:%M:%S')
                logger.warning(f"   Rate limit resets at: {reset_at}")

    def request(self, method, url, timeout=15, **kwargs):
        """Send a throttled request. Raises requests.exceptions.RequestException."""
        self._throttle()
        try:
            response = self.session.request(method, url, headers=self.headers, timeout=timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.warning(f"⚠️ GitHub API error for {url}: {e}")
            raise
        self._check_rate_limit(response)
        return response

    def get(self, url, timeout=15, **kwargs):
        try:
            response = self.request('GET', url, timeout=timeout, **kwargs)
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            logger.error(f"Request failed: {url} - {e}")
            return None

    def verify_commit(self, owner, repo, sha):
        """Check that a commit exists. Returns {'exists', 'status', 'error'}."""
        key = f"{owner}/{repo}@{sha}"
        if key in self._commit_cache:
            return self._commit_cache[key]

        url = f"{GITHUB_API_URL}/repos/{owner}/{repo}/commits/{sha}"
        try:
            response = self.request('GET', url)
            result = {'exists': response.status_code == 200, 'status': response.status_code, 'error': None}
        except requests.exceptions.RequestException as e:
            result = {'exists': False, 'status': None, 'error': str(e)}

        self._commit_cache[key] = result
        return result

    def get_repository_files(self, owner, repo, sha):
        """List blob paths of a repository at a commit.

        Returns {'files', 'status', 'error'}; 'files' is None when the tree
        could not be fetched. A 404 status means the repository or commit
        does not exist, anything else is a transient failure.
        """
        key = f"{owner}/{repo}@{sha}"
        if key in self._tree_cache:
            return self._tree_cache[key]

        url = f"{GITHUB_API_URL}/repos/{owner}/{repo}/git/trees/{sha}"
        result = {'files': None, 'status': None, 'error': None}
        try:
            response = self.request('GET', url, params={'recursive': '1'})
            result['status'] = response.status_code
            if response.status_code == 200:
                data = response.json()
                if data.get('truncated'):
                    logger.warning(f"Tree listing for {key} is truncated")
                result['files'] = {item['path'] for item in data.get('tree', []) if item.get('type') == 'blob'}
            elif response.status_code == 404:
                logger.error(f"Repository or commit not found: {key}")
            else:
                logger.warning(f"Could not fetch repository tree for {key} (status: {response.status_code})")
        except (requests.exceptions.RequestException, ValueError) as e:
            result['error'] = str(e)
            logger.warning(f"Could not fetch repository tree for {key}: {e}")

        self._tree_cache[key] = result
        return result

    def get_issue_labels(self, repository, number):
        resp = self.get(f"{GITHUB_API_URL}/repos/{repository}/issues/{number}/labels")
        return [label['name'] for label in resp.json()] if resp else []

    def add_label(self, repository, number, label):
        url = f"{GITHUB_API_URL}/repos/{repository}/issues/{number}/labels"
        response = self.request('POST', url, json={'labels': [label]})
        response.raise_for_status()

    def remove_label(self, repository, number, label):
        url = f"{GITHUB_API_URL}/repos/{repository}/issues/{number}/labels/{quote(label, safe='')}"
        response = self.request('DELETE', url)
        response.raise_for_status()

    def list_issue_comments(self, repository, number):
        comments = []
        page = 1
        while True:
            url = f"{GITHUB_API_URL}/repos/{repository}/issues/{number}/comments"
            resp = self.get(url, params={'per_page': 100, 'page': page})
            if not resp:
                break
            batch = resp.json()
            comments.extend(batch)
            if len(batch) < 100:
                break
            page += 1
        return comments

    def update_comment(self, repository, comment_id, body):
        url = f"{GITHUB_API_URL}/repos/{repository}/issues/comments/{comment_id}"
        response = self.request('PATCH', url, json={'body': body})
        response.raise_for_status()

    def create_comment(self, repository, number, body):
        url = f"{GITHUB_API_URL}/repos/{repository}/issues/{number}/comments"
        response = self.request('POST', url, json={'body': body})
        response.raise_for_status()
        return response.json()


class GitRepository:
    """Thin wrapper over the git CLI for the registry checkout."""

    def __init__(self, root='.'):
        self.root = os.path.abspath(root)

    def relative(self, path):
        return os.path.relpath(os.path.abspath(os.path.join(self.root, path)), self.root).replace(os.sep, '/')

    def run(self, *args):
        """Run a git command, returning stripped stdout or None on failure."""
        try:
            result = subprocess.run(
                ['git', *args], cwd=self.root, capture_output=True, text=True, check=True
            )
        except (subprocess.CalledProcessError, OSError) as e:
            logger.debug(f"git {' '.join(args)} failed: {e}")
            return None
        return result.stdout.strip()

    def changed_files(self, trunk=TRUNK_BRANCH):
        output = self.run('diff', '--name-only', 'HEAD~1', 'HEAD')
        if not output:
            output = self.run('diff', '--name-only', f'origin/{trunk}', 'HEAD')
        if not output:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    def show_file(self, path, trunk=TRUNK_BRANCH):
        """Content of a file on the trunk branch, or None if it isn't there."""
        rel_path = self.relative(path)
        content = self.run('show', f'origin/{trunk}:{rel_path}')
        if content is None:
            content = self.run('show', f'{trunk}:{rel_path}')
        return content

    def has_uncommitted_changes(self, path):
        return bool(self.run('status', '--porcelain', '--', self.relative(path)))

    def last_commit_timestamp(self, path):
        output = self.run('log', '-1', '--format=%ct', '--follow', '--', self.relative(path))
        if output and output.isdigit():
            return int(output)
        return None

    def commit_files(self, path, message):
        """Stage everything under path (including deletions) and commit it."""
        rel_path = self.relative(path)
        if self.run('add', '--all', '--', rel_path) is None:
            return False
        return self.run('commit', '-m', message, '--', rel_path) is not None
