import json
import os
from unittest.mock import MagicMock

import pytest
from PIL import Image

from utils import References

COMMIT = 'a' * 40
NEW_COMMIT = 'b' * 40

CATEGORIES = ['Games', 'Tools', 'Utilities', 'Themes']
DEVICES = ['m5stack-cardputer', 'm5stack-cplus2', 'lilygo-t-embed', 'lilygo-t-deck']


def base_descriptor(**overrides):
    metadata = {
        'name': 'Clock',
        'category': 'Utilities',
        'description': 'A simple clock',
        'version': '1.0.0',
        'commit': COMMIT,
        'owner': 'alice',
        'repo': 'tools',
        'path': '/apps/',
        'files': ['main.js'],
    }
    metadata.update(overrides)
    return metadata


@pytest.fixture(autouse=True)
def actions_env(monkeypatch):
    for name in ('GITHUB_TOKEN', 'GITHUB_OUTPUT', 'GITHUB_EVENT_NAME', 'GITHUB_EVENT_PATH',
                 'GITHUB_REPOSITORY', 'PR_NUMBER'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def references():
    return References(categories=list(CATEGORIES), devices=list(DEVICES))


@pytest.fixture
def client():
    client = MagicMock()
    client.token = 'test-token'
    client.verify_commit.return_value = {'exists': True, 'status': 200, 'error': None}
    client.get_repository_files.return_value = {
        'files': {'apps/main.js', 'apps/lib/util.js', 'README.md'},
        'status': 200,
        'error': None,
    }
    return client


@pytest.fixture
def git(tmp_path):
    git = MagicMock()
    git.root = str(tmp_path)
    git.show_file.return_value = None
    return git


@pytest.fixture
def registry(tmp_path):
    """A registry checkout with the reference lists in place."""
    with open(tmp_path / 'categories.json', 'w', encoding='utf-8') as f:
        json.dump(CATEGORIES, f)
    with open(tmp_path / 'supported-devices.json', 'w', encoding='utf-8') as f:
        json.dump(DEVICES, f)
    return tmp_path


@pytest.fixture
def make_png():
    def _make(path, width, height):
        Image.new('RGBA', (width, height), (255, 0, 0, 255)).save(path, 'PNG')
        return path
    return _make


@pytest.fixture
def write_descriptor(tmp_path):
    """Write repositories/<owner>/<repo>/<folder>/metadata.json under tmp_path."""
    def _write(metadata=None, owner='alice', repo='tools', folder='Clock', drop=(), raw=None):
        directory = tmp_path / 'repositories' / owner / repo / folder
        os.makedirs(directory, exist_ok=True)
        path = directory / 'metadata.json'
        if raw is not None:
            path.write_text(raw, encoding='utf-8')
        else:
            data = dict(metadata if metadata is not None else base_descriptor())
            for field in drop:
                data.pop(field, None)
            path.write_text(json.dumps(data), encoding='utf-8')
        return str(path), str(directory)
    return _write
