import json
import shutil
import subprocess
from unittest.mock import MagicMock, patch

import pytest
import requests
from urllib3.response import HTTPResponse

from utils import (
    API_DELAY, GitHubClient, GitRepository, ThrottledRetry, compare_versions,
    get_png_dimensions, load_reference_list, load_references, write_github_output, write_json_if_changed
)


def make_response(status=200, payload=None, headers=None):
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Error")
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def github(session, monkeypatch):
    monkeypatch.delenv('GITHUB_TOKEN', raising=False)
    return GitHubClient(token='secret', min_interval=0, session=session)


class TestCompareVersions:
    @pytest.mark.parametrize('v1,v2,expected', [
        ('1.2.0', '1.1.9', 1),
        ('1.0.0', '1.0.0', 0),
        ('1.0.0', '1.0.1', -1),
        ('2.0.0', '10.0.0', -1),
        ('0.10.0', '0.9.99', 1),
        ('1.0', '1.0.0', 0),
    ])
    def test_compare(self, v1, v2, expected):
        assert compare_versions(v1, v2) == expected


class TestPngDimensions:
    @pytest.mark.parametrize('width,height', [(64, 64), (63, 64), (512, 512), (513, 256)])
    def test_reads_ihdr(self, tmp_path, make_png, width, height):
        path = make_png(tmp_path / 'logo.png', width, height)
        assert get_png_dimensions(path) == (width, height)

    def test_rejects_other_formats(self, tmp_path):
        path = tmp_path / 'logo.png'
        path.write_bytes(b'GIF89a' + b'\x00' * 32)
        assert get_png_dimensions(path) is None

    def test_rejects_truncated_file(self, tmp_path):
        path = tmp_path / 'logo.png'
        path.write_bytes(b'\x89PNG\r\n\x1a\n\x00\x00')
        assert get_png_dimensions(path) is None

    def test_missing_file(self, tmp_path):
        assert get_png_dimensions(tmp_path / 'nope.png') is None


class TestJsonHelpers:
    def test_write_json_if_changed(self, tmp_path):
        path = tmp_path / 'out' / 'data.json'
        assert write_json_if_changed(str(path), {'b': 1, 'a': 'é'})
        content = path.read_text(encoding='utf-8')
        assert content == '{\n  "b": 1,\n  "a": "é"\n}\n'

        assert not write_json_if_changed(str(path), {'b': 1, 'a': 'é'})
        assert write_json_if_changed(str(path), {'b': 2, 'a': 'é'})

    def test_load_reference_list(self, tmp_path):
        path = tmp_path / 'categories.json'
        path.write_text(json.dumps(['Games', 'Tools']), encoding='utf-8')
        assert load_reference_list(str(path)) == ['Games', 'Tools']

    @pytest.mark.parametrize('content', ['{"Games": 1}', '[1, 2]', '[', ''])
    def test_load_reference_list_rejects_bad_content(self, tmp_path, content):
        path = tmp_path / 'categories.json'
        path.write_text(content, encoding='utf-8')
        assert load_reference_list(str(path)) is None

    def test_load_references(self, registry):
        references = load_references(str(registry))
        assert 'Themes' in references.categories
        assert 'lilygo-t-deck' in references.devices

    def test_load_references_missing_files(self, tmp_path):
        references = load_references(str(tmp_path))
        assert references.categories is None
        assert references.devices is None

    def test_write_github_output(self, tmp_path, monkeypatch):
        output = tmp_path / 'output.txt'
        monkeypatch.setenv('GITHUB_OUTPUT', str(output))
        write_github_output(success=True, count=3)
        assert output.read_text(encoding='utf-8') == 'success=true\ncount=3\n'


class TestGitHubClient:
    def test_auth_header(self, github):
        assert github.headers['Authorization'] == 'Bearer secret'

    def test_no_token(self, session, monkeypatch):
        monkeypatch.delenv('GITHUB_TOKEN', raising=False)
        client = GitHubClient(session=session)
        assert 'Authorization' not in client.headers

    def test_verify_commit_exists_and_is_cached(self, github, session):
        session.request.return_value = make_response(200, {'sha': 'a' * 40})

        first = github.verify_commit('alice', 'tools', 'a' * 40)
        second = github.verify_commit('alice', 'tools', 'a' * 40)

        assert first == {'exists': True, 'status': 200, 'error': None}
        assert second is first
        session.request.assert_called_once()
        method, url = session.request.call_args[0]
        assert method == 'GET'
        assert url == f"https://api.github.com/repos/alice/tools/commits/{'a' * 40}"

    def test_verify_commit_not_found(self, github, session):
        session.request.return_value = make_response(404)
        result = github.verify_commit('alice', 'tools', 'a' * 40)
        assert result == {'exists': False, 'status': 404, 'error': None}

    def test_verify_commit_network_error(self, github, session):
        session.request.side_effect = requests.exceptions.ConnectionError("connection refused")
        result = github.verify_commit('alice', 'tools', 'a' * 40)
        assert result['exists'] is False
        assert result['status'] is None
        assert 'connection refused' in result['error']

    def test_repository_files_only_blobs(self, github, session):
        session.request.return_value = make_response(200, {'tree': [
            {'path': 'apps', 'type': 'tree'},
            {'path': 'apps/main.js', 'type': 'blob'},
            {'path': 'README.md', 'type': 'blob'},
        ]})

        result = github.get_repository_files('alice', 'tools', 'a' * 40)
        assert result['files'] == {'apps/main.js', 'README.md'}
        assert session.request.call_args[1]['params'] == {'recursive': '1'}

        github.get_repository_files('alice', 'tools', 'a' * 40)
        session.request.assert_called_once()

    def test_repository_files_distinguishes_404(self, github, session):
        session.request.return_value = make_response(404)
        result = github.get_repository_files('alice', 'tools', 'a' * 40)
        assert result['files'] is None
        assert result['status'] == 404

    def test_repository_files_transient_error(self, github, session):
        session.request.side_effect = requests.exceptions.Timeout("timed out")
        result = github.get_repository_files('alice', 'tools', 'a' * 40)
        assert result['files'] is None
        assert result['status'] is None
        assert result['error'] == 'timed out'

    def test_throttle_spaces_calls(self, session):
        session.request.return_value = make_response(200, {})
        client = GitHubClient(token='secret', min_interval=1.0, session=session)

        with patch('utils.time') as mock_time:
            mock_time.monotonic.side_effect = [100.0, 100.2, 101.0]
            client.request('GET', 'https://api.github.com/a')
            client.request('GET', 'https://api.github.com/b')

        mock_time.sleep.assert_called_once()
        assert mock_time.sleep.call_args[0][0] == pytest.approx(0.8)

    def test_throttle_skips_sleep_when_idle(self, session):
        session.request.return_value = make_response(200, {})
        client = GitHubClient(token='secret', min_interval=1.0, session=session)

        with patch('utils.time') as mock_time:
            mock_time.monotonic.side_effect = [100.0, 102.0, 102.0]
            client.request('GET', 'https://api.github.com/a')
            client.request('GET', 'https://api.github.com/b')

        mock_time.sleep.assert_not_called()

    def test_retries_wait_at_least_the_api_delay(self):
        retry = ThrottledRetry(total=3, backoff_factor=1, status_forcelist=[500], raise_on_status=False)
        assert retry.get_backoff_time() >= API_DELAY

        retry = retry.increment(method='GET', url='/repos/alice/tools', response=HTTPResponse(status=500))
        assert retry.get_backoff_time() >= API_DELAY

    def test_session_mounts_throttled_retry(self, monkeypatch):
        monkeypatch.delenv('GITHUB_TOKEN', raising=False)
        client = GitHubClient(token='secret')
        adapter = client.session.get_adapter('https://api.github.com/repos')
        assert isinstance(adapter.max_retries, ThrottledRetry)

    def test_low_rate_limit_is_logged(self, github, session, caplog):
        session.request.return_value = make_response(200, {}, headers={
            'X-RateLimit-Remaining': '3', 'X-RateLimit-Reset': '1700000000'
        })
        github.request('GET', 'https://api.github.com/rate')
        assert 'rate limit low: 3 calls remaining' in caplog.text

    def test_get_returns_none_on_http_error(self, github, session):
        session.request.return_value = make_response(500)
        assert github.get('https://api.github.com/x') is None

    def test_remove_label_encodes_name(self, github, session):
        session.request.return_value = make_response(200, [])
        github.remove_label('org/store', 7, 'missing logo.png')
        method, url = session.request.call_args[0]
        assert method == 'DELETE'
        assert url.endswith('/repos/org/store/issues/7/labels/missing%20logo.png')

    def test_list_issue_comments_paginates(self, github, session):
        first_page = [{'id': i, 'body': 'x'} for i in range(100)]
        session.request.side_effect = [
            make_response(200, first_page),
            make_response(200, [{'id': 100, 'body': 'y'}]),
        ]
        comments = github.list_issue_comments('org/store', 7)
        assert len(comments) == 101
        assert session.request.call_args_list[1][1]['params'] == {'per_page': 100, 'page': 2}


def git_available():
    return shutil.which('git') is not None


@pytest.mark.skipif(not git_available(), reason="git is not installed")
class TestGitRepository:
    @pytest.fixture
    def repo(self, tmp_path):
        def git(*args):
            subprocess.run(
                ['git', '-c', 'user.name=Test', '-c', 'user.email=test@example.com', *args],
                cwd=tmp_path, check=True, capture_output=True
            )
        git('init', '-q', '-b', 'main')
        (tmp_path / 'repositories').mkdir()
        (tmp_path / 'repositories' / 'metadata.json').write_text('{"version": "1.0.0"}\n', encoding='utf-8')
        git('add', '.')
        git('commit', '-q', '-m', 'initial')
        return tmp_path

    def test_show_file_from_trunk(self, repo):
        git = GitRepository(str(repo))
        content = git.show_file(str(repo / 'repositories' / 'metadata.json'), 'main')
        assert content == '{"version": "1.0.0"}'

    def test_show_file_missing(self, repo):
        git = GitRepository(str(repo))
        assert git.show_file('repositories/other.json', 'main') is None

    def test_status_and_timestamp(self, repo):
        git = GitRepository(str(repo))
        path = 'repositories/metadata.json'
        assert not git.has_uncommitted_changes(path)
        assert isinstance(git.last_commit_timestamp(path), int)

        (repo / path).write_text('{"version": "1.0.1"}\n', encoding='utf-8')
        assert git.has_uncommitted_changes(path)

    def test_run_failure_returns_none(self, repo):
        git = GitRepository(str(repo))
        assert git.run('show', 'does-not-exist:nothing') is None
