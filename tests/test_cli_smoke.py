from __future__ import annotations

import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class TestCLISmoke(unittest.TestCase):
    def _run(self, repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
        env = dict(os.environ)
        env.pop("APIFY_TOKEN", None)
        env.pop("OPENAI_API_KEY", None)

        existing_pp = env.get("PYTHONPATH", "")
        env["PYTHONPATH"] = (
            f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)
        )

        return subprocess.run(
            [sys.executable, "-m", "room_ingest", *args],
            cwd=repo_root,
            env=env,
            capture_output=True,
            text=True,
        )

    def test_offline_ingest_show_and_delete(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            db_path = Path(td) / "listings.sqlite"
            log_path = Path(td) / "ingest.log"

            common = ["--config", str(cfg_path), "--db", str(db_path)]

            proc = self._run(
                repo_root,
                "ingest",
                *common,
                "--log",
                str(log_path),
                "--dataset-id",
                "offline",
                "--offline",
            )
            self.assertEqual(proc.returncode, 0, msg=proc.stderr)

            report = json.loads(proc.stdout)
            self.assertTrue(report["success"])
            self.assertEqual(report["stats"]["total_posts"], 5)
            self.assertEqual(report["stats"]["valid_posts"], 4)
            self.assertEqual(report["stats"]["duplicates"]["exact"], 1)
            self.assertEqual(report["stats"]["save"]["created"], 3)
            self.assertIn("summary=", proc.stderr)

            events = [
                json.loads(ln)["event"]
                for ln in log_path.read_text(encoding="utf-8").splitlines()
                if ln.strip()
            ]
            for expected in ("command_started", "ingest_started", "duplicates_classified", "listing_saved", "ingest_completed"):
                self.assertIn(expected, events)

            again = self._run(
                repo_root,
                "ingest",
                *common,
                "--log",
                str(log_path),
                "--dataset-id",
                "offline",
                "--offline",
            )
            self.assertEqual(again.returncode, 0, msg=again.stderr)
            self.assertEqual(
                json.loads(again.stdout)["message"],
                "All posts are duplicates, nothing to process",
            )

            show = self._run(repo_root, "show", *common, "--id", "offline-1")
            self.assertEqual(show.returncode, 0, msg=show.stderr)
            listing = json.loads(show.stdout)
            self.assertEqual(listing["id"], "offline-1")
            self.assertEqual(listing["price"], 3_500_000)
            self.assertTrue(listing["available"])
            self.assertNotIn("raw_provenance", listing)

            delete = self._run(repo_root, "delete", *common, "--id", "offline-1")
            self.assertEqual(delete.returncode, 0, msg=delete.stderr)
            self.assertIn("available=false", delete.stdout)

            show = self._run(repo_root, "show", *common, "--id", "offline-1")
            self.assertFalse(json.loads(show.stdout)["available"])

            missing = self._run(repo_root, "show", *common, "--id", "nope")
            self.assertEqual(missing.returncode, 4)

    def test_webhook_payload_without_dataset_is_input_error(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")
            payload_path = Path(td) / "payload.json"
            payload_path.write_text(json.dumps({"resource": {}}), encoding="utf-8")

            proc = self._run(
                repo_root,
                "webhook",
                "--config",
                str(cfg_path),
                "--db",
                str(Path(td) / "listings.sqlite"),
                "--payload",
                str(payload_path),
                "--offline",
            )

            self.assertEqual(proc.returncode, 2, msg=proc.stderr)
            self.assertIn("defaultDatasetId", proc.stderr)

    def test_missing_secrets_is_config_error(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "config.yaml"
            cfg_path.write_text("{}", encoding="utf-8")

            proc = self._run(
                repo_root,
                "ingest",
                "--config",
                str(cfg_path),
                "--db",
                str(Path(td) / "listings.sqlite"),
                "--dataset-id",
                "ds_1",
            )

            self.assertEqual(proc.returncode, 2)
            self.assertIn("APIFY_TOKEN", proc.stderr)


if __name__ == "__main__":
    unittest.main()
