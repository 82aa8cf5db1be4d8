import os
import tempfile
import unittest

from faturamento.config import Config
from tests.helpers.temp_db import TempDbSandbox, assert_safe_temp_db_path, open_sqlite_temp_connection


class TempDbHelperTest(unittest.TestCase):
    def test_sandbox_is_created_under_temp_and_removed_on_cleanup(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_sanity")
        db_path = sandbox.db_path
        temp_dir = sandbox.temp_dir

        self.assertTrue(os.path.exists(db_path))
        self.assertTrue(db_path.startswith(tempfile.gettempdir()))

        conn = open_sqlite_temp_connection(db_path)
        try:
            conn.execute("CREATE TABLE IF NOT EXISTS parcelas (id INTEGER PRIMARY KEY, valor REAL)")
            conn.execute("INSERT INTO parcelas (valor) VALUES (333.33)")
            row = conn.execute("SELECT SUM(valor) FROM parcelas").fetchone()
            self.assertEqual(float(row[0]), 333.33)
        finally:
            conn.close()

        sandbox.cleanup()
        self.assertFalse(os.path.exists(temp_dir))

    def test_config_points_at_sandbox_and_simulator(self) -> None:
        sandbox = TempDbSandbox(prefix="temp_db_config")
        try:
            cfg = sandbox.make_config(Config, TESTING=True)

            self.assertEqual(cfg.DB_PATH, sandbox.db_path)
            self.assertEqual(cfg.DATABASE_DIR, sandbox.temp_dir)
            self.assertEqual(cfg.BLING_MODE, "mock")
            self.assertEqual(cfg.BLING_POLL_INTERVAL_MS, 0)
            self.assertTrue(cfg.TESTING)
            self.assertTrue(issubclass(cfg, Config))
        finally:
            sandbox.cleanup()

    def test_disallow_workspace_paths(self) -> None:
        workspace_db = os.path.join(os.getcwd(), "faturamento_test.db")
        with self.assertRaises(ValueError):
            assert_safe_temp_db_path(workspace_db)


if __name__ == "__main__":
    unittest.main()
