import io
import os
import random

import pytest

from recorder.errors import BadRequest, Forbidden, IncompleteUpload, NotFound
from recorder.services.chunked_upload import ChunkAssembler


@pytest.fixture
def assembler(tmp_path):
    return ChunkAssembler(str(tmp_path / 'chunks'), max_chunk_bytes=1024 * 1024)


def _chunks(n):
    return [f'<{i}:'.encode() + os.urandom(i % 7 + 1) + b'>' for i in range(n)]


@pytest.mark.parametrize('n', [1, 2, 11, 137, 1000])
def test_any_upload_order_reassembles_in_index_order(assembler, tmp_path, n):
    chunks = _chunks(n)
    upload_id = assembler.init_upload(n)
    order = list(range(n))
    random.Random(n).shuffle(order)
    for i in order:
        assembler.put_chunk(upload_id, i, chunks[i])

    dest = tmp_path / 'out' / 'final.webm'
    assert assembler.complete(upload_id, str(dest)) == str(dest)
    assert dest.read_bytes() == b''.join(chunks)
    # session is consumed
    assert not (tmp_path / 'chunks' / upload_id).exists()


def test_numeric_not_lexical_ordering(assembler, tmp_path):
    upload_id = assembler.init_upload(12)
    for i in range(12):
        assembler.put_chunk(upload_id, i, f'[{i}]'.encode())
    dest = tmp_path / 'final.webm'
    assembler.complete(upload_id, str(dest))
    assert dest.read_bytes() == b''.join(f'[{i}]'.encode() for i in range(12))


def test_complete_with_missing_chunk_writes_nothing(assembler, tmp_path):
    upload_id = assembler.init_upload(4)
    for i in (0, 1, 3):
        assembler.put_chunk(upload_id, i, b'x')
    dest = tmp_path / 'final.webm'

    with pytest.raises(IncompleteUpload) as exc:
        assembler.complete(upload_id, str(dest))
    assert exc.value.missing == [2]
    assert exc.value.to_dict()['missingChunks'] == [2]
    assert not dest.exists()
    assert not [p for p in os.listdir(tmp_path) if p.startswith('.assemble-')]

    assert not os.path.exists(os.path.join(assembler.base_dir, upload_id))
    with pytest.raises(NotFound):
        assembler.complete(upload_id, str(dest))


def test_reupload_overwrites_only_that_index(assembler, tmp_path):
    upload_id = assembler.init_upload(3)
    assembler.put_chunk(upload_id, 0, b'aaa')
    assembler.put_chunk(upload_id, 1, b'bbb')
    assembler.put_chunk(upload_id, 2, b'ccc')
    assembler.put_chunk(upload_id, 1, b'B')
    dest = tmp_path / 'final.webm'
    assembler.complete(upload_id, str(dest))
    assert dest.read_bytes() == b'aaaBccc'


def test_second_complete_fails_cleanly(assembler, tmp_path):
    upload_id = assembler.init_upload(1)
    assembler.put_chunk(upload_id, 0, b'only')
    dest = tmp_path / 'final.webm'
    assembler.complete(upload_id, str(dest))

    with pytest.raises(NotFound):
        assembler.complete(upload_id, str(dest))
    assert dest.read_bytes() == b'only'


def test_put_chunk_opens_session_on_demand(assembler):
    assembler.put_chunk('client-chosen-id', 1, io.BytesIO(b'part'), total_chunks=2)
    assert assembler.missing_chunks('client-chosen-id') == [0]


def test_put_chunk_without_session_or_total_is_not_found(assembler):
    with pytest.raises(NotFound):
        assembler.put_chunk('nope', 0, b'x')


def test_rejects_out_of_range_index_and_bad_ids(assembler):
    upload_id = assembler.init_upload(2)
    with pytest.raises(BadRequest):
        assembler.put_chunk(upload_id, 2, b'x')
    with pytest.raises(BadRequest):
        assembler.put_chunk(upload_id, -1, b'x')
    with pytest.raises(BadRequest):
        assembler.put_chunk('../../etc', 0, b'x')
    with pytest.raises(BadRequest):
        assembler.init_upload(0)


def test_oversized_chunk_rejected_without_leftovers(tmp_path):
    assembler = ChunkAssembler(str(tmp_path / 'chunks'), max_chunk_bytes=8)
    upload_id = assembler.init_upload(1)
    with pytest.raises(BadRequest):
        assembler.put_chunk(upload_id, 0, io.BytesIO(b'0123456789'))
    session = tmp_path / 'chunks' / upload_id
    assert sorted(os.listdir(session)) == ['manifest.json']


def test_chunk_for_another_recording_is_forbidden(assembler):
    upload_id = assembler.init_upload(1, recording_id='rec-a')
    with pytest.raises(Forbidden):
        assembler.put_chunk(upload_id, 0, b'x', recording_id='rec-b')


def test_discard_for_recording_and_purge(assembler):
    a = assembler.init_upload(1, recording_id='rec-a')
    b = assembler.init_upload(1, recording_id='rec-b')
    assert assembler.discard_for_recording('rec-a') == 1
    with pytest.raises(NotFound):
        assembler.read_manifest(a)

    created = assembler.read_manifest(b)['created_at']
    assert assembler.purge_abandoned(3600, now=created + 10) == 0
    assert assembler.purge_abandoned(3600, now=created + 7200) == 1
    with pytest.raises(NotFound):
        assembler.read_manifest(b)
