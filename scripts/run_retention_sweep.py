"""Run one retention sweep now and print the counts.

Usage:
  python scripts/run_retention_sweep.py            # expired recordings only
  python scripts/run_retention_sweep.py --stale    # also fail stale recordings
"""
import json
import os
import sys

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

os.environ.setdefault('RETENTION_SWEEP_ENABLED', '0')

from recorder import create_app
from recorder.jobs.retention import run_retention_sweep


def main(argv):
    overrides = {'RECONCILE_STALE_ON_SWEEP': True} if '--stale' in argv else None
    app = create_app(overrides)
    with app.app_context():
        result = run_retention_sweep()
    print(json.dumps(result, indent=2))
    return 1 if result.get('failed') else 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
