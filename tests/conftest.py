import pytest

from deckreview import db


@pytest.fixture
def conn(tmp_path):
    connection = db.init_db(tmp_path / "deckreview.db")
    yield connection
    connection.close()
