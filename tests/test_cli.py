"""
End-to-end tests for the command line entry point.
"""

import json

import pytest

from main import main
from tests.conftest import (
    LINEAR_COEFFICIENTS,
    SESSION_ANCHOR_ID,
    SQUARE_ANCHORS,
    rss_for_distance,
    true_ranges,
)


TRUE_POSITION = (3.0, 7.0)


def scan_record(position, anchors=SQUARE_ANCHORS, t_scan=0.0):
    ranges = true_ranges(position, anchors)
    return {
        't_scan': t_scan,
        'samples': [
            {'bssid': a.label + 'a', 'level': rss_for_distance(r)}
            for a, r in zip(anchors, ranges)
        ],
    }


@pytest.fixture
def site(tmp_path):
    """Anchor and coefficient files for the square layout."""
    anchors = tmp_path / 'anchors.json'
    anchors.write_text(json.dumps([a.to_dict() for a in SQUARE_ANCHORS]))

    coefficients = tmp_path / 'coefficients.json'
    coefficients.write_text(json.dumps({str(SESSION_ANCHOR_ID): list(LINEAR_COEFFICIENTS)}))

    return tmp_path, [
        '--anchors', str(anchors),
        '--coefficients', str(coefficients),
        '--session-anchor', str(SESSION_ANCHOR_ID),
    ]


class TestFit:

    def test_fit_from_csv(self, tmp_path, capsys):
        samples = tmp_path / 'samples.csv'
        samples.write_text("rss,distance\n-40,1\n-50,2\n-60,3\n-70,4\n-80,5\n")
        out = tmp_path / 'coefficients.json'

        code = main(['fit', '--anchor-id', '3', '--samples', str(samples),
                     '--coefficients-out', str(out)])

        assert code == 0
        assert 'anchor 3' in capsys.readouterr().out
        stored = json.loads(out.read_text())
        assert stored['3']['source'] == 'fitted'
        assert stored['3']['num_samples'] == 5

    def test_fit_merges_into_existing_file(self, tmp_path):
        out = tmp_path / 'coefficients.json'
        out.write_text(json.dumps({'1': [1, 0, 0, 0]}))

        code = main(['fit', '--anchor-id', '2', '--manual', '0.5', '-0.1', '0', '0',
                     '--coefficients-out', str(out)])

        assert code == 0
        stored = json.loads(out.read_text())
        assert set(stored) == {'1', '2'}
        assert stored['2']['source'] == 'manual'

    def test_fit_insufficient_samples(self, tmp_path):
        samples = tmp_path / 'samples.csv'
        samples.write_text("rss,distance\n-40,1\n-50,2\n-60,3\n")

        assert main(['fit', '--anchor-id', '1', '--samples', str(samples)]) == 12

    def test_malformed_coefficients_are_usage_error(self, site):
        tmp_path, common = site
        (tmp_path / 'coefficients.json').write_text(json.dumps({'1': 5}))
        scan = tmp_path / 'scan.json'
        scan.write_text(json.dumps(scan_record(TRUE_POSITION)))

        assert main(['locate', *common, '--scan', str(scan)]) == 2

    def test_missing_file_is_usage_error(self, tmp_path):
        missing = tmp_path / 'nope.csv'

        assert main(['fit', '--anchor-id', '1', '--samples', str(missing)]) == 2


class TestLocate:

    def test_malformed_scan_value_is_usage_error(self, site):
        tmp_path, common = site
        scan = tmp_path / 'scan.json'
        scan.write_text(json.dumps([{'bssid': 'AA:BB:CC:00:00:1a', 'rss': [1]}]))

        assert main(['locate', *common, '--scan', str(scan)]) == 2

    def test_locate(self, site, capsys):
        tmp_path, common = site
        scan = tmp_path / 'scan.json'
        scan.write_text(json.dumps(scan_record(TRUE_POSITION)))

        code = main(['locate', *common, '--scan', str(scan)])

        assert code == 0
        out = capsys.readouterr().out
        assert 'weighted_circular' in out
        assert '(3.000, 7.000)' in out

    def test_locate_insufficient_anchors(self, site):
        tmp_path, common = site
        scan = tmp_path / 'scan.json'
        scan.write_text(json.dumps(scan_record(TRUE_POSITION, SQUARE_ANCHORS[:3])))

        assert main(['locate', *common, '--scan', str(scan)]) == 10

    def test_locate_unknown_session_anchor(self, site):
        tmp_path, common = site
        scan = tmp_path / 'scan.json'
        scan.write_text(json.dumps(scan_record(TRUE_POSITION)))
        common[-1] = '4'

        assert main(['locate', *common, '--scan', str(scan)]) == 11


class TestTrack:

    def write_log(self, path, records):
        path.write_text("\n".join(json.dumps(r) for r in records) + "\n")

    def test_track_json_output(self, site, capsys):
        tmp_path, common = site
        log = tmp_path / 'scans.jsonl'
        self.write_log(log, [
            scan_record(TRUE_POSITION, t_scan=1.0),
            scan_record(TRUE_POSITION, SQUARE_ANCHORS[:3], t_scan=2.0),
            scan_record(TRUE_POSITION, t_scan=3.0),
        ])

        code = main(['track', *common, '--scans', str(log), '--json'])

        assert code == 0
        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]
        assert len(lines) == 3
        assert lines[0]['fix_type'] == 'EKF_FIX'
        assert lines[1]['fix_type'] == 'NO_FIX'
        assert lines[1]['error_code'] == 10

    def test_track_without_any_fix_returns_last_error(self, site):
        tmp_path, common = site
        log = tmp_path / 'scans.jsonl'
        self.write_log(log, [scan_record(TRUE_POSITION, SQUARE_ANCHORS[:2])])

        assert main(['track', *common, '--scans', str(log)]) == 10

    def test_track_summary(self, site, capsys):
        tmp_path, common = site
        log = tmp_path / 'scans.jsonl'
        self.write_log(log, [scan_record(TRUE_POSITION)])

        assert main(['track', *common, '--scans', str(log), '--summary']) == 0
        assert 'METRICS SUMMARY' in capsys.readouterr().out
