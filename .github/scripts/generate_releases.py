import os
import re
import sys
import json
import time
import argparse

from utils import (
    REPOSITORIES_DIR, REQUIRED_FIELDS, GitRepository, is_theme,
    logger, write_github_output, write_json_if_changed
)

RELEASES_DIR = 'releases'
CATEGORY_PREFIX = 'category-'
RELEASES_FILE = 'releases.json'
CATEGORIES_SUMMARY_FILE = 'categories.json'

# Never shipped to clients
INTERNAL_FIELDS = ('commit', 'owner', 'repo', 'path', 'files', 'category')


def find_metadata_files(directory):
    """All metadata.json files below directory, in a stable order."""
    metadata_files = []
    if not os.path.isdir(directory):
        return metadata_files

    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        if 'metadata.json' in filenames:
            metadata_files.append(os.path.join(dirpath, 'metadata.json'))
    return metadata_files


def load_metadata(file_path):
    """Parse a descriptor, or return None (with a warning) when it is unusable."""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            metadata = json.load(f)
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Skipping {file_path}: {e}")
        return None

    if not isinstance(metadata, dict):
        logger.warning(f"⚠️ Skipping {file_path}: root must be an object")
        return None

    for field in REQUIRED_FIELDS:
        value = metadata.get(field)
        if not isinstance(value, str) or not value:
            logger.warning(f"⚠️ Skipping {file_path}: missing or empty field '{field}'")
            return None

    metadata['_directory'] = os.path.dirname(file_path).replace('\\', '/')
    return metadata


def category_slug(category):
    return re.sub(r'[^a-z0-9]', '-', category.lower())


def app_slug(metadata):
    folder = metadata['_directory'].rstrip('/').split('/')[-1]
    return f"{metadata['owner']}/{metadata['repo']}/{folder}"


def group_by_category(descriptors):
    categories = {}
    for metadata in descriptors:
        categories.setdefault(metadata['category'], []).append(metadata)
    for apps in categories.values():
        apps.sort(key=lambda app: (app['name'], app_slug(app)))
    return categories


def normalize_entry(metadata):
    """Client-facing copy of a descriptor: internal fields out, slug and aliases in."""
    theme = is_theme(metadata['category'])
    entry = {
        key: value for key, value in metadata.items()
        if key not in INTERNAL_FIELDS and not key.startswith('_')
        and key not in ('supported-devices', 'supported-screen-size')
    }
    entry['slug'] = app_slug(metadata)

    # short aliases read by the device firmware
    entry['n'] = entry['name']
    entry['d'] = entry['description']
    entry['v'] = entry['version']
    entry['s'] = entry['slug']

    if metadata.get('supported-devices') and not theme:
        entry['supported-devices'] = metadata['supported-devices']
        entry['sd'] = metadata['supported-devices']
    if metadata.get('supported-screen-size') and theme:
        entry['supported-screen-size'] = metadata['supported-screen-size']
        entry['sss'] = metadata['supported-screen-size']
    return entry


def build_category_listing(category, apps):
    return {
        'category': category,
        'count': len(apps),
        'apps': [normalize_entry(app) for app in apps],
    }


def build_releases_listing(categories):
    apps = []
    for members in categories.values():
        for app in members:
            apps.append({
                'name': app['name'],
                'description': app['description'],
                'version': app['version'],
                'slug': app_slug(app),
            })
    apps.sort(key=lambda app: (app['name'], app['slug']))
    return {'count': len(apps), 'apps': apps}


def category_files(categories):
    """Listing file name per category. Raises ValueError when two categories share a slug."""
    files = {}
    claimed = {}
    for category in sorted(categories):
        file_name = f"{CATEGORY_PREFIX}{category_slug(category)}.json"
        if file_name in claimed:
            raise ValueError(f"Categories '{claimed[file_name]}' and '{category}' both map to {file_name}")
        claimed[file_name] = category
        files[category] = file_name
    return files


def load_previous_timestamps(path):
    """lastUpdated per category slug from an existing categories.json."""
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Ignoring unreadable {path}: {e}")
        return {}

    timestamps = {}
    items = data.get('categories') if isinstance(data, dict) else None
    for item in items if isinstance(items, list) else []:
        if not isinstance(item, dict):
            continue
        slug, last_updated = item.get('slug'), item.get('lastUpdated')
        if isinstance(slug, str) and isinstance(last_updated, int) and not isinstance(last_updated, bool):
            timestamps[slug] = last_updated
    return timestamps


def category_timestamp(git, file_path, changed, previous=None):
    """Now when the category file was rewritten, else the recorded or committed time."""
    if changed:
        return int(time.time())
    # unchanged file keeps the time recorded when it was last written
    if previous is not None:
        return previous
    if git.has_uncommitted_changes(file_path):
        return int(time.time())
    timestamp = git.last_commit_timestamp(file_path)
    if timestamp is None:
        logger.info(f"No commits found for {os.path.basename(file_path)}, using current time")
        return int(time.time())
    return timestamp


def build_categories_summary(categories, output_dir, git, changed_files, previous=None):
    previous = previous or {}
    summary = []
    for category in sorted(categories):
        slug = category_slug(category)
        file_path = os.path.join(output_dir, f"{CATEGORY_PREFIX}{slug}.json")
        summary.append({
            'name': category,
            'slug': slug,
            'count': len(categories[category]),
            'lastUpdated': category_timestamp(git, file_path, file_path in changed_files, previous.get(slug)),
        })
    return {
        'totalCategories': len(summary),
        'totalApps': sum(item['count'] for item in summary),
        'categories': summary,
    }


def remove_stale_category_files(output_dir, keep):
    removed = []
    for name in sorted(os.listdir(output_dir)):
        if name.startswith(CATEGORY_PREFIX) and name.endswith('.json') and name not in keep:
            path = os.path.join(output_dir, name)
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"⚠️ Could not remove {name}: {e}")
                continue
            removed.append(path)
            logger.info(f"🗑️ Removed obsolete file: {name}")
    return removed


def generate_releases(root='.', output_dir=None, git=None):
    """Regenerate every release file. Returns the list of written or removed paths."""
    git = git or GitRepository(root)
    output_dir = output_dir or os.path.join(root, RELEASES_DIR)

    metadata_files = find_metadata_files(os.path.join(root, REPOSITORIES_DIR))
    logger.info(f"📁 Found {len(metadata_files)} metadata files")
    if not metadata_files:
        logger.info("No metadata files found. No release files will be generated.")
        if os.path.isdir(output_dir):
            return remove_stale_category_files(output_dir, set())
        return []

    descriptors = [m for m in (load_metadata(path) for path in metadata_files) if m]
    skipped = len(metadata_files) - len(descriptors)
    categories = group_by_category(descriptors)
    logger.info(f"📊 Processed: {len(descriptors)}, Skipped: {skipped}")

    files = category_files(categories)
    os.makedirs(output_dir, exist_ok=True)

    changed = []
    keep = set(files.values())
    for category, file_name in files.items():
        apps = categories[category]
        path = os.path.join(output_dir, file_name)
        if write_json_if_changed(path, build_category_listing(category, apps)):
            changed.append(path)
            logger.info(f"📄 Generated {file_name} with {len(apps)} apps")

    changed.extend(remove_stale_category_files(output_dir, keep))

    releases_path = os.path.join(output_dir, RELEASES_FILE)
    if write_json_if_changed(releases_path, build_releases_listing(categories)):
        changed.append(releases_path)

    summary_path = os.path.join(output_dir, CATEGORIES_SUMMARY_FILE)
    previous = load_previous_timestamps(summary_path)
    summary = build_categories_summary(categories, output_dir, git, set(changed), previous)
    if write_json_if_changed(summary_path, summary):
        changed.append(summary_path)

    logger.info(
        f"📋 Summary: {summary['totalCategories']} categories, "
        f"{summary['totalApps']} apps, {len(changed)} files changed"
    )
    return changed


def main():
    parser = argparse.ArgumentParser(description='Generate release listings from the registry')
    parser.add_argument('--root', default='.', help='Registry checkout root')
    parser.add_argument('--output', default=None, help=f'Output directory (default: <root>/{RELEASES_DIR})')
    parser.add_argument('--commit', action='store_true', help='Commit changed release files')
    args = parser.parse_args()

    try:
        git = GitRepository(args.root)
        output_dir = args.output or os.path.join(args.root, RELEASES_DIR)
        changed = generate_releases(args.root, output_dir, git)

        if changed and args.commit:
            if git.commit_files(output_dir, 'Update release files'):
                logger.info(f"✅ Committed {len(changed)} release files")
            else:
                logger.error("Failed to commit release files")
                sys.exit(1)
        elif not changed:
            logger.info("Release files are up to date")

        write_github_output(changed=bool(changed))
    except Exception as e:
        logger.exception(f"Release generation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
