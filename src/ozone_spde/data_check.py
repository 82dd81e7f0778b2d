"""
Make sure the observation and grid tables are present locally.

If a table is missing it is downloaded from the given URL. Zip archives are
extracted next to the target file.
"""

import logging
import zipfile
from pathlib import Path

import requests

logger = logging.getLogger(__name__)


def ensure_dataset(data_path: Path, download_url: str, timeout: float = 60.0) -> Path:
    """Return ``data_path``, downloading it first when it does not exist.

    Parameters
    ----------
    data_path : Path
        Expected location of the CSV table
    download_url : str
        URL of the CSV file or of a zip archive containing it
    timeout : float
        Seconds to wait for the server

    Raises
    ------
    requests.exceptions.RequestException
        If the download fails
    FileNotFoundError
        If the archive did not contain ``data_path``
    """
    data_path = Path(data_path)
    if data_path.exists():
        logger.info(f"Data file already exists at {data_path}.")
        return data_path

    logger.warning(f"Data file {data_path} not found. Attempting to download...")
    data_path.parent.mkdir(parents=True, exist_ok=True)
    is_zip = download_url.lower().endswith(".zip")
    target = data_path.parent / "data.zip" if is_zip else data_path

    try:
        response = requests.get(download_url, stream=True, timeout=timeout)
        response.raise_for_status()
        with open(target, "wb") as f:
            for chunk in response.iter_content(chunk_size=8192):
                f.write(chunk)
        logger.info(f"Data downloaded successfully to {target}.")

        if is_zip:
            with zipfile.ZipFile(target, "r") as zip_ref:
                zip_ref.extractall(data_path.parent)
            target.unlink()
            logger.info(f"Data extracted to {data_path.parent}.")

    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to download data from {download_url}: {e}")
        raise
    except zipfile.BadZipFile as e:
        logger.error(f"Failed to unzip the downloaded file: {e}")
        raise

    if not data_path.exists():
        raise FileNotFoundError(f"Download did not produce {data_path}")
    return data_path
