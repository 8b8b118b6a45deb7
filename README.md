# vamana

A graph-based approximate nearest neighbour index for dense vectors,
together with readers and writers for the simple binary matrix format it
uses on disk.

## Installation

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## The bin format

A bin file holds a matrix: two little-endian 32-bit integers (number of
rows, number of columns) followed by the row-major values.

```python
import numpy as np
from vamana.binio import save_bin, load_bin, get_bin_metadata

data = np.random.rand(100, 16).astype(np.float32)
save_bin("points.bin", data)            # returns the number of bytes written

print(get_bin_metadata("points.bin"))   # (100, 16)
loaded = load_bin("points.bin", np.float32)
```

Other helpers in `vamana.binio`:

- `load_aligned_bin(path, dtype)` returns `(data, dim)`, with each row
  zero-padded up to a multiple of 8 columns;
- `load_truthset(path)` returns `(ids, dists)` from a ground-truth file;
  `dists` is `None` when the file holds only ids;
- `save_tvecs(path, data)` writes each row as a u32 dimension followed by
  the row's values;
- `validate_file_size(path)` checks a file's leading u64 against its size;
- `round_up`, `div_round_up`, `round_down`, `is_aligned`, `gen_random`,
  `convert_types`, `get_values`, `file_exists`, `get_file_size`.

A file whose size does not match its header raises
`vamana.errors.ANNError`, which carries a `message` and an `error_code`.

## Building and searching an index

```python
import numpy as np
from vamana.index import Index
from vamana.binio import Metric

index = Index(Metric.L2, "points.bin")
parameters = {"L": 50, "R": 32, "C": 500, "alpha": 1.2, "saturate_graph": False}
index.build(parameters)

query = np.random.rand(16).astype(np.float32)
result = index.search(query, 10, 50)
print(result.ids, result.distances, result.cmps)

index.save("points.index")
```

The constructor takes `metric, filename, max_points=0, nd=0,
num_frozen_pts=0, enable_tags=False, store_data=True,
support_eager_delete=False`. The data file is read as float32; set
`data_type` in a subclass to load int8 or uint8 vectors. Only
`Metric.L2` (squared Euclidean distance) is supported; any other metric
raises `ANNError`.

`L` is the search list size, `R` the maximum out-degree, `C` the
maximum number of candidates considered while pruning and `alpha` the
pruning factor used in the second of the two build passes. The
`parameters` mapping is modified during the build: its `alpha` is set to
1 for the first pass.

`search` returns a `SearchResult` with `ids`, `distances`, `hops` and
`cmps`; `search_with_tags(query, k, l)` also fills `tags`.

A saved graph is read back into an index created over the same data file:

```python
index = Index(Metric.L2, "points.bin")
index.load("points.index")                      # graph only
index.load("points.index", load_tags=True)      # also reads points.index.tags
```

A tag file holds whitespace-separated integer tags, one per point in
order.

## Updating an index

With tags enabled (`enable_tags=True` and one tag per point passed to
`build`), points can be inserted and deleted afterwards:

- `enable_delete()` switches deletions on;
- `delete_point(tag)` marks a point deleted lazily, and
  `disable_delete(parameters, True)` consolidates the graph afterwards
  (or call `consolidate_deletes(parameters)` directly);
- `eager_delete(tag, parameters)` repairs the graph immediately (the index
  should be created with `support_eager_delete=True`);
- `insert_point(point, parameters, tag)` adds a new point to a built index
  and returns its location.

Failures, such as an unknown tag, a duplicate tag or a full index, raise
`ANNError`. Frozen points can be filled with
`generate_random_frozen_points(filename=None)` before building.

## Other pieces

- `vamana.pq_table.FixedChunkPQTable` loads product-quantisation pivots
  (256 centers) with `load_pq_centroid_bin(path, num_chunks)` and returns
  a `(n_chunks, 256)` distance table from `populate_chunk_distances(query)`.
- `vamana.neighbor` holds `Neighbor`, `SimpleNeighbor`, the bounded
  `Nhood` pool and `insert_into_pool`, the sorted candidate insertion used
  by search.
- `vamana.memory_mapper.MemoryMapper` maps a file read-only, exposes
  `buf` and `file_size`, and works as a context manager.
- `vamana.aligned_reader.AlignedFileReader` serves batches of
  `AlignedRead` offset/length requests from a file; each thread calls
  `register_thread()` and passes `get_ctx()` to `read`.
- `vamana.logger.LogStream` is a write-only, thread-safe buffered stream
  over standard output or standard error.

Progress and diagnostics go to the standard `logging` logger named
`vamana`.

## What it does not do

- There is no command-line tool; the package is used as a library.
- Building and searching run in a single thread, in memory.
- Only the L2 metric is available.
- There is no disk-resident index or search over PQ-compressed vectors:
  `FixedChunkPQTable` and `AlignedFileReader` are building blocks only.