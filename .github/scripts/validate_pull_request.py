import os
import sys
import argparse

import requests

from utils import (
    REPOSITORIES_DIR, TRUNK_BRANCH, GitHubClient, GitRepository,
    get_png_dimensions, load_json, load_references, logger, write_github_output
)
from validate_metadata import ValidationLog, validate_metadata

LOGO_MIN_SIZE = 64
LOGO_MAX_SIZE = 512

LABEL_MISSING_METADATA = 'missing metadata.json'
LABEL_INVALID_METADATA = 'invalid metadata.json'
LABEL_MISSING_LOGO = 'missing logo.png'
LABEL_REVIEW_REQUIRED = 'review required'
LABEL_EXTERNAL = 'external contribution'
MANAGED_LABELS = [
    LABEL_MISSING_METADATA, LABEL_INVALID_METADATA, LABEL_MISSING_LOGO,
    LABEL_REVIEW_REQUIRED, LABEL_EXTERNAL
]

PASSED_HEADER = '# ✅ Validation Passed'
FAILED_HEADER = '# ❌ Validation Failed'
SUPERSEDED_MARKER = '🔄 Superseded by new commit'
DOCS_URL = 'https://github.com/BruceDevices/App-Store-Data/blob/main/README.md#-common-validation-errors'

PR_EVENTS = ('pull_request', 'pull_request_target')


def find_changed_metadata(git, trunk=TRUNK_BRANCH):
    """Directories whose metadata.json changed and still exists."""
    directories = []
    changed = git.changed_files(trunk)
    if changed:
        logger.info(f"Changed files: {', '.join(changed)}")

    for file in changed:
        if os.path.basename(file) != 'metadata.json':
            continue
        if not os.path.exists(os.path.join(git.root, file)):
            continue
        directory = os.path.dirname(file)
        directories.append({
            'directory': directory,
            'metadata_file': file,
            'logo_file': os.path.join(directory, 'logo.png'),
        })

    logger.info(f"Found {len(directories)} directories with changed metadata.json files")
    return changed, directories


def parse_owner_repo(directory):
    """(owner, repo) from the segments after `repositories/`, None where missing."""
    parts = directory.replace('\\', '/').split('/')
    if REPOSITORIES_DIR not in parts:
        return None, None
    index = parts.index(REPOSITORIES_DIR)
    owner = parts[index + 1] if len(parts) > index + 1 else None
    repo = parts[index + 2] if len(parts) > index + 2 else None
    return owner, repo


def group_by_repository(directories):
    groups = {}
    for entry in directories:
        owner, repo = parse_owner_repo(entry['directory'])
        if owner and repo:
            key = f"{owner}/{repo}"
            groups.setdefault(key, {'owner': owner, 'repo': repo, 'directories': []})
        else:
            key = entry['directory']
            groups.setdefault(key, {'owner': None, 'repo': None, 'directories': []})
        groups[key]['directories'].append(entry)
    return groups


def load_event():
    path = os.environ.get('GITHUB_EVENT_PATH')
    if not path:
        return {}
    return load_json(path, default={})


def get_pr_author(event):
    pull_request = event.get('pull_request') or {}
    return (pull_request.get('user') or {}).get('login')


def get_pr_number(event):
    number = os.environ.get('PR_NUMBER')
    if number:
        return number
    if event.get('number'):
        return event['number']
    return (event.get('pull_request') or {}).get('number')


def detect_external_contribution(pr_author, directories):
    """True when the PR author owns none of the changed repositories."""
    if not pr_author:
        return False
    owners = set()
    for entry in directories:
        owner, _ = parse_owner_repo(entry['directory'])
        if owner:
            owners.add(owner)

    if not owners:
        logger.warning("Could not determine repository owners from folder structure")
        return False
    if pr_author in owners:
        logger.info(f"Author contribution: {pr_author} is the repository owner")
        return False
    logger.info(f"External contribution detected: {pr_author} is not in [{', '.join(sorted(owners))}]")
    return True


def logo_size_problems(width, height):
    problems = []
    if width < LOGO_MIN_SIZE or height < LOGO_MIN_SIZE:
        problems.append(f"Logo too small: minimum size is {LOGO_MIN_SIZE}x{LOGO_MIN_SIZE}")
    if width > LOGO_MAX_SIZE or height > LOGO_MAX_SIZE:
        problems.append(f"Logo too large: maximum size is {LOGO_MAX_SIZE}x{LOGO_MAX_SIZE}")
    if width != height:
        problems.append(f"Logo must be square: {width}x{height} is not square")
    return problems


def check_logo(logo_file, log):
    log.step("Checking logo dimensions...", depth=1)
    dimensions = get_png_dimensions(logo_file)
    if not dimensions:
        log.fail("Unable to read logo dimensions (not a valid PNG?)", depth=2)
        return False

    width, height = dimensions
    log.info(f"Logo size: {width}x{height}", depth=2)
    problems = logo_size_problems(width, height)
    for problem in problems:
        log.fail(problem, depth=2)
    if not problems:
        log.ok(f"Logo size valid: {width}x{height}", depth=2)
    return not problems


def validate_directory(entry, root, pr_author, client, git, references, trunk=TRUNK_BRANCH):
    """Validate metadata.json and logo.png of one descriptor directory."""
    directory = entry['directory']
    metadata_file = os.path.join(root, entry['metadata_file'])
    logo_file = os.path.join(root, entry['logo_file'])

    outcome = {
        'directory': directory,
        'valid': True,
        'metadata_found': False,
        'invalid_metadata': False,
        'missing_logo': False,
        'summary': '',
        'output': '',
    }
    lines = []

    lines.append("- 📄 `metadata.json`")
    if os.path.exists(metadata_file):
        outcome['metadata_found'] = True
        result = validate_metadata(metadata_file, directory, pr_author, client, git, references, trunk)
        lines.extend(f"  {line}" for line in result.log.lines)
        if not result.success:
            outcome['valid'] = False
            outcome['invalid_metadata'] = True
        outcome['summary'] = result.summary or f"### {directory}\n❌ **Validation Failed**\n\n"
    else:
        lines.append("  - ❌ File not found")
        outcome['valid'] = False

    lines.append("- 📄 `logo.png`")
    logo_log = ValidationLog()
    if os.path.exists(logo_file):
        logo_log.ok("File exists", depth=0)
        if not check_logo(logo_file, logo_log):
            outcome['valid'] = False
    else:
        logo_log.fail("File not found", depth=0)
        outcome['missing_logo'] = True
        outcome['valid'] = False
    lines.extend(f"  {line}" for line in logo_log.lines)

    outcome['output'] = '\n'.join(lines)
    return outcome


def build_summary(metadata_found, validation_failed, invalid_metadata, missing_logo):
    """Returns (success, summary markdown)."""
    if not metadata_found:
        summary = (
            '❌ **No metadata.json files found in changed directories**\n\n'
            'When adding new apps or components, each directory must include a metadata.json file. '
            'Please add a metadata.json file following the required format.\n\n'
        )
        return False, summary

    if validation_failed or missing_logo:
        summary = ''
        if missing_logo:
            summary += '❌ **Missing `logo.png` files in directories with `metadata.json`**\n\n'
        if invalid_metadata:
            summary += '❌ **Invalid metadata.json files detected**\n\n'
        summary += 'Please fix the errors shown in the **🔍 Validation Steps** output above.\n\n'
        return False, summary

    summary = (
        '✅ **All files are valid!**\n\n'
        'All metadata.json files and logo.png files passed validation checks.'
    )
    return True, summary


def desired_labels(success, missing_metadata, invalid_metadata, missing_logo, external):
    labels = set()
    if missing_metadata:
        labels.add(LABEL_MISSING_METADATA)
    if invalid_metadata:
        labels.add(LABEL_INVALID_METADATA)
    if missing_logo:
        labels.add(LABEL_MISSING_LOGO)
    if success:
        labels.add(LABEL_REVIEW_REQUIRED)
    if external:
        labels.add(LABEL_EXTERNAL)
    return labels


def manage_pr_labels(client, repository, number, wanted):
    current = set(client.get_issue_labels(repository, number))
    for label in MANAGED_LABELS:
        try:
            if label in wanted and label not in current:
                client.add_label(repository, number, label)
                logger.info(f"Added label: {label}")
            elif label not in wanted and label in current:
                client.remove_label(repository, number, label)
                logger.info(f"Removed label: {label}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Error managing PR label '{label}': {e}")


def build_comment_body(success, details, summary):
    sections = ''
    for detail in details:
        if not detail['summary'].strip():
            continue
        sections += detail['summary']
        sections += '<details>\n<summary>🔍 Validation Steps (click to expand)</summary>\n\n'
        sections += detail['output']
        sections += '\n</details>\n\n'

    if success:
        return f"{PASSED_HEADER}\n\n## 📦 Updated Apps/Components:\n\n{sections}"

    return (
        f"{FAILED_HEADER}\n\n## 📦 Apps/Components Being Updated:\n\n{sections}"
        f"## Summary of Issues:\n\n{summary}\n"
        "## Please address the above issues and push new commits to this pull request for re-validation.\n\n"
        f"Please check the documentation for guidance on resolving validation errors [here]({DOCS_URL})."
    )


def is_validation_comment(body):
    body = body or ''
    return (PASSED_HEADER in body or FAILED_HEADER in body) and SUPERSEDED_MARKER not in body


def post_pr_comment(client, repository, number, body):
    """Collapse earlier validation comments, then post the new one."""
    try:
        for comment in client.list_issue_comments(repository, number):
            if is_validation_comment(comment.get('body')):
                superseded = f"<details>\n<summary>{SUPERSEDED_MARKER}</summary>\n\n{comment['body']}\n\n</details>"
                client.update_comment(repository, comment['id'], superseded)

        client.create_comment(repository, number, body)
        logger.info("Successfully posted PR comment")
    except requests.exceptions.RequestException as e:
        logger.error(f"Error posting PR comment: {e}")


def run(root='.', trunk=TRUNK_BRANCH, client=None, git=None):
    """Validate the changed descriptors. Returns True when everything passed."""
    git = git or GitRepository(root)
    client = client or GitHubClient()
    references = load_references(root)

    changed, directories = find_changed_metadata(git, trunk)
    if not changed:
        logger.info("No changed files detected")
        return True

    event_name = os.environ.get('GITHUB_EVENT_NAME')
    event = load_event() if event_name in PR_EVENTS else {}
    pr_author = get_pr_author(event)
    if pr_author:
        logger.info(f"Checking contribution type - PR Author: {pr_author}")
    external = detect_external_contribution(pr_author, directories)

    details = []
    for key, group in group_by_repository(directories).items():
        if group['owner']:
            logger.info(f"📋 Repository: {key}")
        for entry in group['directories']:
            logger.info(f"📁 Processing: {entry['directory']}")
            details.append(validate_directory(entry, root, pr_author, client, git, references, trunk))
            logger.info('─' * 80)

    metadata_found = any(d['metadata_found'] for d in details)
    invalid_metadata = any(d['invalid_metadata'] for d in details)
    missing_logo = any(d['missing_logo'] for d in details)
    validation_failed = any(not d['valid'] for d in details)

    success, summary = build_summary(metadata_found, validation_failed, invalid_metadata, missing_logo)
    logger.info(summary.strip())

    repository = os.environ.get('GITHUB_REPOSITORY')
    number = get_pr_number(event)
    if event_name in PR_EVENTS and client.token and repository and number:
        wanted = desired_labels(success, not metadata_found, invalid_metadata, missing_logo, external)
        manage_pr_labels(client, repository, number, wanted)
        post_pr_comment(client, repository, number, build_comment_body(success, details, summary))
    else:
        logger.info("Not a pull request with token, repository and number; skipping labels and comment")

    write_github_output(success=success)
    return success


def main():
    parser = argparse.ArgumentParser(description='Validate metadata.json/logo.png changes in a pull request')
    parser.add_argument('--root', default='.', help='Registry checkout root')
    parser.add_argument('--trunk', default=TRUNK_BRANCH, help='Branch holding the published versions')
    args = parser.parse_args()

    try:
        success = run(args.root, args.trunk)
    except Exception as e:
        logger.exception(f"Validation script failed: {e}")
        sys.exit(1)

    if not success:
        sys.exit(1)


if __name__ == "__main__":
    main()
