import json
import logging
import re
from collections import namedtuple

from utils import (
    REQUIRED_FIELDS, TRUNK_BRANCH, compare_versions, is_theme, logger
)

VERSION_PATTERN = re.compile(r'[0-9]+\.[0-9]+\.[0-9]+')
COMMIT_PATTERN = re.compile(r'[a-f0-9]{40}')
SCREEN_SIZE_PATTERN = re.compile(r'[0-9]+x[0-9]+')

PlainFile = namedtuple('PlainFile', ['path'])
RenamedFile = namedtuple('RenamedFile', ['source', 'destination'])


class ValidationLog:
    """Step-by-step validation output for one directory.

    Every line is mirrored to the logger and kept so it can be embedded in
    the pull request comment.
    """

    def __init__(self):
        self.lines = []
        self.error_count = 0

    def _add(self, level, marker, message, depth):
        line = f"{'  ' * depth}- {marker} {message}" if marker else f"{'  ' * depth}- {message}"
        self.lines.append(line)
        logger.log(level, line.strip())

    def step(self, message, depth=0):
        self._add(logging.INFO, '🔍', message, depth)

    def ok(self, message, depth=1):
        self._add(logging.INFO, '✅', message, depth)

    def info(self, message, depth=1):
        self._add(logging.INFO, 'ℹ️', message, depth)

    def warn(self, message, depth=1):
        self._add(logging.WARNING, '⚠️', message, depth)

    def fail(self, message, depth=1):
        self.error_count += 1
        self._add(logging.ERROR, '❌', message, depth)

    @property
    def has_errors(self):
        return self.error_count > 0

    def text(self):
        return '\n'.join(self.lines)


class ValidationResult:
    def __init__(self, success, summary='', log=None, compare_url=None, previous_commit=None, metadata=None):
        self.success = success
        self.summary = summary
        self.log = log or ValidationLog()
        self.compare_url = compare_url
        self.previous_commit = previous_commit
        self.metadata = metadata

    def __repr__(self):
        return f"ValidationResult(success={self.success!r}, compare_url={self.compare_url!r})"


def parse_file_entry(entry):
    """Turn a `files` entry into PlainFile or RenamedFile. Raises ValueError."""
    if isinstance(entry, str):
        if not entry:
            raise ValueError("File entry must not be an empty string")
        return PlainFile(entry)
    if isinstance(entry, dict):
        source = entry.get('source')
        destination = entry.get('destination')
        if not source or not destination:
            raise ValueError(f"File object must contain 'source' and 'destination' properties: `{json.dumps(entry)}`")
        if not isinstance(source, str) or not isinstance(destination, str):
            raise ValueError(f"File object 'source' and 'destination' must be strings: `{json.dumps(entry)}`")
        return RenamedFile(source, destination)
    raise ValueError(f"File entry must be a string or object with 'source' and 'destination' properties: `{entry}`")


def resolve_repository_path(base_path, file_path):
    """Join a descriptor `path` and a file entry into a repo-relative path."""
    if file_path.startswith('/'):
        file_path = file_path[1:]
    base = '' if base_path == '/' else base_path.strip('/')
    return f"{base}/{file_path}" if base else file_path


def _display(entry):
    if isinstance(entry, RenamedFile):
        return f"{entry.source} → {entry.destination}"
    return entry.path


def _source(entry):
    return entry.source if isinstance(entry, RenamedFile) else entry.path


def check_required_fields(metadata, log):
    log.step("Checking required fields...")
    for field in REQUIRED_FIELDS:
        if field not in metadata:
            log.fail(f"Missing required field: `{field}`")
            continue
        value = metadata[field]
        if value is None or value == '':
            log.fail(f"Field `{field}` is null or empty")
        elif not isinstance(value, str):
            log.fail(f"Field `{field}` must be a string")
        else:
            log.ok(f"Field `{field}`: `{value}`")


def check_commit(metadata, client, log):
    commit = metadata.get('commit')
    if not isinstance(commit, str) or not commit:
        return
    if not COMMIT_PATTERN.fullmatch(commit):
        log.fail(f"Commit `{commit}` must be a valid 40-character SHA hash")
        return
    log.ok(f"Commit hash format valid: `{commit}`")

    owner, repo = metadata.get('owner'), metadata.get('repo')
    if not owner or not repo:
        log.warn("Cannot verify commit without owner/repo information")
        return

    verification = client.verify_commit(owner, repo, commit)
    if verification['exists']:
        log.ok(f"Commit `{commit}` exists on GitHub")
    elif verification['status'] == 404:
        log.fail(f"Commit `{commit}` not found in {owner}/{repo}")
    elif verification.get('error'):
        log.warn(f"Could not verify commit on GitHub: {verification['error']}")
    else:
        log.warn(f"Could not verify commit on GitHub (status: {verification['status']})")


def check_category(metadata, references, log):
    category = metadata.get('category')
    if not category:
        return
    if references.categories is None:
        log.fail("Could not load valid categories list")
    elif category not in references.categories:
        log.fail(f"Category `{category}` is not in valid list: {', '.join(references.categories)}")
    else:
        log.ok(f"Category valid: `{category}`")


def check_screen_size(metadata, log):
    if is_theme(metadata.get('category')):
        screen_size = metadata.get('supported-screen-size')
        if not screen_size:
            log.fail("Field 'supported-screen-size' is required for themes")
        elif not isinstance(screen_size, str):
            log.fail("supported-screen-size must be a string")
        elif not SCREEN_SIZE_PATTERN.fullmatch(screen_size):
            log.fail("supported-screen-size must be in format 'widthxheight' (e.g., '320x170')")
        else:
            width, height = (int(part) for part in screen_size.split('x'))
            if width <= 0 or height <= 0:
                log.fail("supported-screen-size dimensions must be positive numbers")
            else:
                log.ok(f"Screen size valid: `{screen_size}` ({width}x{height})")
    elif 'supported-screen-size' in metadata:
        log.fail("Field 'supported-screen-size' is only allowed for themes")


def check_supported_devices(metadata, references, log):
    if metadata.get('supported-devices') is None:
        return
    if is_theme(metadata.get('category')):
        log.fail("Field 'supported-devices' is not allowed for themes")
        return

    devices = metadata['supported-devices']
    valid_devices = references.devices
    if valid_devices is None:
        log.fail("Could not load supported devices list")
        return

    if isinstance(devices, list):
        if not devices:
            log.fail("supported-devices must list at least one device")
            return
        invalid = [device for device in devices if device not in valid_devices]
        for device in invalid:
            log.fail(f"Device `{device}` is not in supported devices list")
        if not invalid:
            log.ok(f"All devices valid: `{', '.join(devices)}`")
    elif isinstance(devices, str):
        if devices in valid_devices:
            log.ok(f"Device valid: `{devices}`")
            return
        try:
            pattern = re.compile(devices)
        except re.error:
            log.fail(f"Invalid device name or regex pattern: `{devices}`")
            return
        matching = [device for device in valid_devices if pattern.search(device)]
        if matching:
            log.ok(f"Regex pattern `{devices}` matches {len(matching)} devices: {', '.join(matching)}")
        else:
            log.fail(f"Regex pattern `{devices}` doesn't match any devices")
    else:
        log.fail("supported-devices must be a string, regex pattern, or array of device names")


def check_folder_structure(metadata, directory, log):
    owner, repo = metadata.get('owner'), metadata.get('repo')
    if not owner or not repo:
        log.warn("Cannot validate folder structure without owner/repo information", depth=0)
        return
    log.step("Checking folder structure...")
    expected = f"repositories/{owner}/{repo}"
    actual = directory.replace('\\', '/')
    if expected in actual:
        log.ok(f"Folder structure valid: contains `{expected}`")
    else:
        log.fail(f"Folder structure invalid: expected path containing `{expected}`, got `{actual}`")


def check_files(metadata, client, log):
    if 'files' not in metadata:
        return
    log.step("Validating files array...")
    files = metadata['files']
    if not isinstance(files, list):
        log.fail("Field `files` must be an array")
        return
    log.ok(f"Files field is a valid array with {len(files)} entries")

    entries = []
    for raw in files:
        try:
            entries.append(parse_file_entry(raw))
        except ValueError as e:
            log.fail(str(e))

    owner, repo, commit = metadata.get('owner'), metadata.get('repo'), metadata.get('commit')
    base_path = metadata.get('path')
    if not all(isinstance(value, str) and value for value in (owner, repo, commit, base_path)):
        log.warn("Cannot verify files without owner/repo/commit/path information")
        return
    if not entries:
        return

    log.step("Fetching repository file tree...", depth=1)
    tree = client.get_repository_files(owner, repo, commit)
    if tree['files'] is None:
        if tree['status'] == 404:
            log.fail(f"Repository or commit not found: {owner}/{repo}@{commit}")
        else:
            log.warn("Could not verify files - repository tree unavailable")
        return
    log.ok(f"Repository tree loaded ({len(tree['files'])} files)")

    for entry in entries:
        resolved = resolve_repository_path(base_path, _source(entry))
        if resolved in tree['files']:
            log.ok(f"File exists at commit: `{_display(entry)}` (path: {resolved})")
        else:
            log.fail(f"File not found at commit `{commit}`: `{_display(entry)}` (expected path: {resolved})")


def check_version_history(metadata, metadata_file, git, trunk, log):
    """Compare against the trunk copy. Returns (version_status, previous_commit)."""
    version = metadata['version']
    log.step("Checking version history...")
    log.info(f"Current version: {version}")

    previous_content = git.show_file(metadata_file, trunk)
    if not previous_content:
        log.info(f"No previous file found in {trunk} branch")
        return f"{version} (🆕 New submission)", None

    try:
        previous = json.loads(previous_content)
    except json.JSONDecodeError as e:
        log.warn(f"Previous file is not valid JSON: {e}")
        return f"{version} (🆕 New submission)", None

    previous_version = previous.get('version') if isinstance(previous, dict) else None
    if not isinstance(previous_version, str) or not VERSION_PATTERN.fullmatch(previous_version):
        log.warn("Previous file has no usable version field")
        return f"{version} (🆕 New submission)", None

    previous_commit = previous.get('commit') or None
    log.info(f"Previous version: {previous_version}")

    comparison = compare_versions(version, previous_version)
    if comparison > 0:
        if previous_commit and previous_commit == metadata.get('commit'):
            log.fail(f"Commit not updated: {metadata['commit']} is same as previous commit")
            return f"{previous_version} → {version} (❌ Same commit)", previous_commit
        log.ok(f"Version updated: {previous_version} → {version}")
        return f"{previous_version} → {version} (✅ Version updated)", previous_commit
    if comparison == 0:
        log.fail(f"Version unchanged: {version} is same as previous version")
        return f"{version} (❌ Version unchanged)", previous_commit
    log.fail(f"Version downgrade: {version} is lower than previous {previous_version}")
    return f"{version} (❌ Version downgrade)", previous_commit


def compare_url(owner, repo, previous_commit, commit):
    if previous_commit and commit and previous_commit != commit:
        return f"https://github.com/{owner}/{repo}/compare/{previous_commit}...{commit}"
    return None


def build_metadata_summary(metadata, directory, success, version_status, pr_author, link):
    owner, repo = metadata.get('owner'), metadata.get('repo')
    lines = [
        f"### {metadata.get('name')} ({directory})",
        '✅ **Validation Passed**' if success else '❌ **Validation Failed**',
        f"- **Repository:** [{owner}/{repo}](https://github.com/{owner}/{repo})",
        f"- **Path:** `{metadata.get('path')}`",
        f"- **Version:** {version_status}",
        f"- **Category:** {metadata.get('category')}",
    ]
    if pr_author and owner and pr_author != owner:
        lines.append(f"- **⚠️ Cross-Repository Contribution:** PR by `{pr_author}`, repository owned by `{owner}`")
    if link:
        lines.append(f"- **Changes:** [View commit comparison]({link})")
    return '\n'.join(lines) + '\n\n'


def validate_metadata(metadata_file, directory, pr_author, client, git, references, trunk=TRUNK_BRANCH):
    """Validate one metadata.json and return a ValidationResult.

    All checks run even after a failure so the contributor sees every
    problem at once; only an unparsable file stops early. The version
    history check runs last and only when nothing else failed.
    """
    log = ValidationLog()
    try:
        with open(metadata_file, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        log.fail(f"Invalid JSON format: {e}", depth=0)
        return ValidationResult(False, log=log)
    if not isinstance(metadata, dict):
        log.fail("Invalid JSON format: root must be an object", depth=0)
        return ValidationResult(False, log=log)
    log.ok("Valid JSON format", depth=0)

    check_required_fields(metadata, log)

    log.step("Validating fields...")
    version = metadata.get('version')
    if isinstance(version, str) and version:
        if VERSION_PATTERN.fullmatch(version):
            log.ok(f"Version format valid: `{version}`")
        else:
            log.fail(f"Version `{version}` must be in format X.Y.Z")

    check_commit(metadata, client, log)
    check_category(metadata, references, log)
    check_screen_size(metadata, log)
    check_supported_devices(metadata, references, log)
    check_folder_structure(metadata, directory, log)
    check_files(metadata, client, log)

    version_status = f"{version} (not checked)"
    previous_commit = None
    if not log.has_errors:
        version_status, previous_commit = check_version_history(metadata, metadata_file, git, trunk, log)

    success = not log.has_errors
    if success:
        log.ok("All validation checks passed", depth=0)

    link = compare_url(metadata.get('owner'), metadata.get('repo'), previous_commit, metadata.get('commit'))
    summary = build_metadata_summary(
        metadata, directory, success, version_status, pr_author, link
    )
    return ValidationResult(
        success, summary=summary, log=log, compare_url=link,
        previous_commit=previous_commit, metadata=metadata
    )
