"""
SCMU Egg and Ocean Covariate Data Readers
=========================================

This module provides functions to read the Scripps's murrelet (SCMU) egg
measurements and the raw oceanographic covariate series into pandas objects.

Covariate readers return a single-column DataFrame with a datetime index named
``time`` and the covariate name as column. Each carries ``attrs`` metadata
including ``native_time_resolution`` ('monthly' or 'annual'), which the
covariate builder uses to decide which temporal windows are available.

Supported Datasets
------------------
Eggs:
    - Santa Barbara Island egg measurements (year, observer, plot, egg order,
      size)
    - Monitoring plot locations (Plot_Name, Lat, Long)

Covariates:
    - SST: sea-surface temperature, monthly (CSV export or gridded NetCDF)
    - BEUTI: Biologically Effective Upwelling Transport Index, monthly
    - NPGO: North Pacific Gyre Oscillation, monthly
    - ONI: Oceanic Nino Index, overlapping 3-month seasons
    - PDO: Pacific Decadal Oscillation (ERSST v5), monthly
    - ANCHL: CalCOFI larval anchovy abundance, annual

Dependencies
------------
- pandas
- numpy
- xarray, netCDF4 (for gridded SST only)

Example
-------
>>> from egg_data_readers import read_egg_data, read_pdo
>>> eggs = read_egg_data('data/raw/eggs/SCMU_egg_data.csv')
>>> pdo = read_pdo('data/raw/covariates/pdo.txt')

"""
import os
import numpy as np
import pandas as pd

from typing import Optional, Tuple


# Eggs smaller than this (mm) are treated as measurement errors.
MIN_EGG_SIZE = 40.0

_MONTHS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun',
           'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

# Centre month of each CPC overlapping season
_ONI_SEASON_MONTH = {
    'DJF': 1, 'JFM': 2, 'FMA': 3, 'MAM': 4, 'AMJ': 5, 'MJJ': 6,
    'JJA': 7, 'JAS': 8, 'ASO': 9, 'SON': 10, 'OND': 11, 'NDJ': 12,
}

_EGG_ORDER_LABELS = {
    '1': 1, '2': 2, 'a': 1, 'b': 2,
    'first': 1, 'second': 2, '1st': 1, '2nd': 2,
}

_EGG_COLUMNS = {
    'year': 'year',
    'observer': 'observer',
    'plot': 'plot',
    'plot_name': 'plot',
    'eggorder': 'LayingSequence',
    'egg_order': 'LayingSequence',
    'layingsequence': 'LayingSequence',
    'laying_sequence': 'LayingSequence',
    'size': 'size',
    'egg_size': 'size',
}


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================

def _check_file(filepath: str) -> None:
    if not os.path.exists(filepath):
        raise FileNotFoundError(f"Input file not found: {filepath}")


def _monthly_frame(years, months, values, name: str) -> pd.DataFrame:
    """Assemble a monthly single-column DataFrame indexed by month start."""
    time = pd.to_datetime(pd.DataFrame({
        'year': np.asarray(years, dtype=int),
        'month': np.asarray(months, dtype=int),
        'day': 1,
    }))
    df = pd.DataFrame({name: pd.to_numeric(pd.Series(values), errors='coerce').values},
                      index=pd.DatetimeIndex(time, name='time'))
    df = df.sort_index()
    return df[~df.index.duplicated(keep='first')]


def _attach_attrs(df: pd.DataFrame, dataset: str, reference: Optional[str],
                  resolution: str, units: str) -> pd.DataFrame:
    name = df.columns[0]
    df.attrs = {
        'dataset': dataset,
        'reference': reference,
        'covariate': name,
        'native_units': {name: units},
        'native_time_resolution': resolution,
    }
    return df


# =============================================================================
# EGG DATA
# =============================================================================

def read_egg_data(filepath: str, min_size: float = MIN_EGG_SIZE) -> pd.DataFrame:
    """
    Read SCMU egg measurements.

    Parameters
    ----------
    filepath : str
        Path to CSV file (SCMU_egg_data.csv).
    min_size : float, default MIN_EGG_SIZE
        Physical-plausibility threshold. Eggs with ``size < min_size`` are
        dropped as outliers.

    Returns
    -------
    pd.DataFrame
        One row per egg with columns:
        - year: int
        - observer: str
        - plot: str
        - LayingSequence: int (1 = first egg, 2 = second egg)
        - size: float (mm)

    Notes
    -----
    Column names are matched case-insensitively; ``EggOrder``/``Egg_Order``
    map to ``LayingSequence`` and ``Plot_Name`` maps to ``plot``. Egg order
    may be numeric or a label such as 'first'/'second' or 'A'/'B'.
    """
    _check_file(filepath)
    raw = pd.read_csv(filepath)

    rename = {}
    for col in raw.columns:
        key = col.strip().lower()
        if key in _EGG_COLUMNS and _EGG_COLUMNS[key] not in rename.values():
            rename[col] = _EGG_COLUMNS[key]
    df = raw.rename(columns=rename)

    required = ['year', 'observer', 'plot', 'LayingSequence', 'size']
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(
            f"Egg file {filepath} is missing columns {missing}. "
            f"Found: {list(raw.columns)}"
        )
    df = df[required].copy()

    order = df['LayingSequence'].astype(str).str.strip().str.lower()
    order = order.str.replace(r'\.0$', '', regex=True).map(_EGG_ORDER_LABELS)
    if order.isna().any():
        bad = sorted(df.loc[order.isna(), 'LayingSequence'].astype(str).unique())
        raise ValueError(f"Unrecognised egg order values: {bad}")

    df['LayingSequence'] = order.astype(int)
    df['year'] = pd.to_numeric(df['year'], errors='coerce')
    df['size'] = pd.to_numeric(df['size'], errors='coerce')
    df['observer'] = df['observer'].astype(str).str.strip()
    df['plot'] = df['plot'].astype(str).str.strip()

    df = df.dropna(subset=['year', 'size'])
    df['year'] = df['year'].astype(int)

    n_before = len(df)
    df = df[df['size'] >= min_size].reset_index(drop=True)

    df.attrs = {
        'dataset': 'scmu_eggs',
        'native_units': {'size': 'mm'},
        'min_size': min_size,
        'n_outliers_removed': n_before - len(df),
    }
    return df


def read_plots(filepath: str) -> pd.DataFrame:
    """
    Read monitoring plot locations.

    Returns
    -------
    pd.DataFrame
        Columns: plot, lat, lon (decimal degrees, WGS84).
    """
    _check_file(filepath)
    df = pd.read_csv(filepath)
    lower = {c.lower(): c for c in df.columns}
    try:
        out = pd.DataFrame({
            'plot': df[lower.get('plot_name', lower.get('plot'))].astype(str),
            'lat': pd.to_numeric(df[lower['lat']], errors='coerce'),
            'lon': pd.to_numeric(df[lower.get('long', lower.get('lon'))], errors='coerce'),
        })
    except KeyError:
        raise ValueError(
            f"Plot file {filepath} needs Plot_Name, Lat and Long columns. "
            f"Found: {list(df.columns)}"
        )
    return out.dropna(subset=['lat', 'lon']).reset_index(drop=True)


def read_coastline(filepath: str) -> pd.DataFrame:
    """
    Read island outline vertices for the site map.

    One row per vertex with ``lon`` and ``lat`` columns; an optional ``part``
    column separates rings (one per island). Without it the file is a single
    ring.

    Returns
    -------
    pd.DataFrame
        Columns: part, lon, lat, in file order.
    """
    _check_file(filepath)
    df = pd.read_csv(filepath)
    lower = {c.lower(): c for c in df.columns}
    if 'lat' not in lower or not ({'lon', 'long'} & set(lower)):
        raise ValueError(
            f"Coastline file {filepath} needs lon and lat columns. "
            f"Found: {list(df.columns)}"
        )
    out = pd.DataFrame({
        'part': df[lower['part']].astype(str) if 'part' in lower else '0',
        'lon': pd.to_numeric(df[lower.get('lon', lower.get('long'))], errors='coerce'),
        'lat': pd.to_numeric(df[lower['lat']], errors='coerce'),
    })
    return out.dropna(subset=['lon', 'lat']).reset_index(drop=True)


# =============================================================================
# MONTHLY COVARIATES
# =============================================================================

def read_sst(filepath: str,
             value_col: Optional[str] = None,
             lat_range: Tuple[float, float] = (33.0, 34.0),
             lon_range: Tuple[float, float] = (-119.5, -118.5)) -> pd.DataFrame:
    """
    Read sea-surface temperature near Santa Barbara Island.

    Accepts either a CSV export (a ``time`` column plus an SST column, as
    written by ERDDAP; a units row under the header is tolerated) or a gridded
    NetCDF file, in which case the field is averaged over the lat/lon box and
    then over each calendar month.

    Parameters
    ----------
    filepath : str
        Path to ``.csv`` or ``.nc`` file.
    value_col : str, optional
        SST column (CSV) or variable (NetCDF). Defaults to the first of
        'sst', 'SST', 'analysed_sst'.
    lat_range, lon_range : tuple of float
        Averaging box for gridded input (degrees north / east).

    Returns
    -------
    pd.DataFrame
        Monthly DataFrame with column 'SST' (°C).
    """
    _check_file(filepath)
    candidates = [value_col] if value_col else ['sst', 'SST', 'analysed_sst']

    if filepath.endswith('.nc'):
        return _read_sst_netcdf(filepath, candidates, lat_range, lon_range)

    df = pd.read_csv(filepath)
    col = next((c for c in candidates if c in df.columns), None)
    if col is None:
        raise ValueError(f"No SST column among {candidates} in {filepath}")
    time_col = 'time' if 'time' in df.columns else df.columns[0]

    time = pd.to_datetime(df[time_col], errors='coerce', utc=True).dt.tz_localize(None)
    values = pd.to_numeric(df[col], errors='coerce')
    s = pd.Series(values.values, index=time).loc[time.notna().values]
    # Daily exports collapse to calendar months
    s = s.groupby([s.index.year, s.index.month]).mean()

    out = _monthly_frame(s.index.get_level_values(0), s.index.get_level_values(1),
                         s.values, 'SST')
    return _attach_attrs(out, 'sst', 'NOAA OISST / ERDDAP', 'monthly', 'degC')


def _read_sst_netcdf(filepath, candidates, lat_range, lon_range):
    try:
        import xarray as xr
    except ImportError:
        raise ImportError(
            "xarray is required to read gridded SST.\n"
            "Install with: pip install xarray netCDF4"
        )

    with xr.open_dataset(filepath) as ds:
        var = next((c for c in candidates if c in ds.data_vars), None)
        if var is None:
            raise ValueError(f"No SST variable among {candidates} in {filepath}")
        da = ds[var]

        lat_name = 'lat' if 'lat' in da.dims else 'latitude'
        lon_name = 'lon' if 'lon' in da.dims else 'longitude'
        lon = da[lon_name]
        lo, hi = lon_range
        # Grids on 0-360 longitudes
        if float(lon.max()) > 180 and lo < 0:
            lo, hi = lo % 360, hi % 360

        lat = da[lat_name]
        lat_mask = (lat >= lat_range[0]) & (lat <= lat_range[1])
        lon_mask = (lon >= lo) & (lon <= hi)
        box = da.where(lat_mask & lon_mask, drop=True)
        if box.size == 0:
            raise ValueError(
                f"SST box lat={lat_range}, lon={lon_range} selects no grid cells"
            )
        series = box.mean(dim=[lat_name, lon_name], skipna=True).to_series()

        if 'units' in da.attrs and str(da.attrs['units']).lower().startswith('k'):
            series = series - 273.15

    series.index = pd.to_datetime(series.index)
    s = series.groupby([series.index.year, series.index.month]).mean()
    out = _monthly_frame(s.index.get_level_values(0), s.index.get_level_values(1),
                         s.values, 'SST')
    out = _attach_attrs(out, 'sst', 'gridded SST (box mean)', 'monthly', 'degC')
    out.attrs['box'] = {'lat': tuple(lat_range), 'lon': tuple(lon_range)}
    return out


def read_beuti(filepath: str, latitude: str = '33N') -> pd.DataFrame:
    """
    Read the Biologically Effective Upwelling Transport Index.

    Parameters
    ----------
    filepath : str
        Path to monthly CSV (columns: year, month, 31N, 32N, ...).
    latitude : str, default '33N'
        Latitude column nearest the colony.

    Returns
    -------
    pd.DataFrame
        Monthly DataFrame with column 'BEUTI' (mmol NO3 / s / m coastline).

    Reference
    ---------
    Jacox, M. G., Edwards, C. A., Hazen, E. L., & Bograd, S. J. (2018).
    Coastal upwelling revisited: Ekman, Bakun, and improved upwelling indices
    for the U.S. West Coast. JGR: Oceans, 123(10), 7332-7350.
    https://doi.org/10.1029/2018JC014187
    """
    _check_file(filepath)
    df = pd.read_csv(filepath)
    df.columns = [c.strip() for c in df.columns]
    if latitude not in df.columns:
        raise ValueError(
            f"Latitude column '{latitude}' not in {filepath}. "
            f"Available: {[c for c in df.columns if c.endswith('N')]}"
        )
    out = _monthly_frame(df['year'], df['month'], df[latitude], 'BEUTI')
    out = _attach_attrs(out, 'beuti', 'Jacox et al. (2018)', 'monthly',
                        'mmol/s/m')
    out.attrs['latitude'] = latitude
    return out


def read_npgo(filepath: str) -> pd.DataFrame:
    """
    Read the North Pacific Gyre Oscillation index.

    The file is whitespace-delimited ``YEAR MONTH NPGO`` with ``#`` comment
    lines.

    Reference
    ---------
    Di Lorenzo, E., et al. (2008). North Pacific Gyre Oscillation links ocean
    climate and ecosystem change. GRL, 35, L08607.
    https://doi.org/10.1029/2007GL032838
    """
    _check_file(filepath)
    with open(filepath, 'r') as f:
        lines = f.readlines()

    data = []
    for line in lines:
        stripped = line.strip()
        if stripped and not stripped.startswith('#'):
            parts = stripped.split()
            if len(parts) >= 3:
                try:
                    data.append((int(parts[0]), int(parts[1]), float(parts[2])))
                except ValueError:
                    continue

    if not data:
        raise ValueError(f"No NPGO records found in {filepath}")
    years, months, values = zip(*data)
    out = _monthly_frame(years, months, values, 'NPGO')
    return _attach_attrs(out, 'npgo', 'Di Lorenzo et al. (2008)', 'monthly',
                         'index')


def read_oni(filepath: str) -> pd.DataFrame:
    """
    Read the CPC Oceanic Nino Index table (``SEAS YR TOTAL ANOM``).

    Each overlapping 3-month season is assigned to its centre month
    (DJF -> January, ..., NDJ -> December) and the ``ANOM`` column is used.

    Reference
    ---------
    NOAA Climate Prediction Center, ONI v5 (ERSST.v5).
    """
    _check_file(filepath)
    df = pd.read_csv(filepath, sep=r'\s+')
    df.columns = [c.upper() for c in df.columns]
    if not {'SEAS', 'YR', 'ANOM'}.issubset(df.columns):
        raise ValueError(f"ONI file {filepath} needs SEAS, YR and ANOM columns")

    months = df['SEAS'].str.upper().map(_ONI_SEASON_MONTH)
    if months.isna().any():
        raise ValueError(
            f"Unknown ONI seasons: {sorted(df.loc[months.isna(), 'SEAS'].unique())}"
        )
    out = _monthly_frame(df['YR'], months, df['ANOM'], 'ONI')
    return _attach_attrs(out, 'oni', 'NOAA CPC', 'monthly', 'degC')


def read_pdo(filepath: str, missing_value: float = 99.99) -> pd.DataFrame:
    """
    Read the NOAA ERSST v5 Pacific Decadal Oscillation index.

    The file has a title line, then a ``Year Jan Feb ... Dec`` header and one
    row per year. Values of ``missing_value`` mark months not yet available.

    Reference
    ---------
    Mantua, N. J., et al. (1997). A Pacific interdecadal climate oscillation
    with impacts on salmon production. BAMS, 78(6), 1069-1079.
    """
    _check_file(filepath)
    with open(filepath, 'r') as f:
        lines = f.readlines()

    header_row = next(
        (i for i, line in enumerate(lines) if line.strip().lower().startswith('year')),
        None,
    )
    if header_row is None:
        raise ValueError(f"No 'Year Jan ... Dec' header in {filepath}")

    df = pd.read_csv(filepath, sep=r'\s+', skiprows=header_row)
    df = df.rename(columns={df.columns[0]: 'Year'})
    df_long = df.melt(id_vars=['Year'], value_vars=_MONTHS,
                      var_name='month', value_name='PDO')
    df_long['month_num'] = df_long['month'].map({m: i + 1 for i, m in enumerate(_MONTHS)})
    df_long['PDO'] = pd.to_numeric(df_long['PDO'], errors='coerce')
    df_long.loc[np.isclose(df_long['PDO'], missing_value), 'PDO'] = np.nan

    out = _monthly_frame(df_long['Year'], df_long['month_num'], df_long['PDO'], 'PDO')
    return _attach_attrs(out, 'pdo', 'Mantua et al. (1997)', 'monthly', 'index')


# =============================================================================
# ANNUAL COVARIATES
# =============================================================================

def read_anchovy(filepath: str, value_col: Optional[str] = None) -> pd.DataFrame:
    """
    Read CalCOFI larval anchovy abundance (annual).

    Parameters
    ----------
    filepath : str
        CSV with a year column and one abundance column.
    value_col : str, optional
        Abundance column; defaults to the first numeric non-year column.

    Returns
    -------
    pd.DataFrame
        Annual DataFrame (index at 1 July) with column 'ANCHL'.
    """
    _check_file(filepath)
    df = pd.read_csv(filepath)
    lower = {c.lower(): c for c in df.columns}
    year_col = lower.get('year')
    if year_col is None:
        raise ValueError(f"Anchovy file {filepath} has no year column")

    if value_col is None:
        numeric = [c for c in df.columns
                   if c != year_col and pd.api.types.is_numeric_dtype(df[c])]
        if not numeric:
            raise ValueError(f"No numeric abundance column in {filepath}")
        value_col = numeric[0]

    df = df.dropna(subset=[year_col])
    time = pd.to_datetime(df[year_col].astype(int).astype(str) + '-07-01')
    out = pd.DataFrame({'ANCHL': pd.to_numeric(df[value_col], errors='coerce').values},
                       index=pd.DatetimeIndex(time, name='time')).sort_index()
    return _attach_attrs(out, 'calcofi_anchovy', 'CalCOFI larval fish surveys',
                         'annual', 'larvae/10 m2')


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    'MIN_EGG_SIZE',
    # Eggs
    'read_egg_data',
    'read_plots',
    'read_coastline',
    # Monthly covariates
    'read_sst',
    'read_beuti',
    'read_npgo',
    'read_oni',
    'read_pdo',
    # Annual covariates
    'read_anchovy',
]
