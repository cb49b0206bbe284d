import pytest
import torch

from DepthRefinement.device.buffer import PITCH_ALIGNMENT, DeviceBuffer
from DepthRefinement.device.command_queue import CommandQueue


@pytest.fixture
def queue():
    return CommandQueue(device='cpu')


def test_cpu_queue_is_synchronous(queue):
    assert not queue.is_async
    with queue.scope():
        pass
    queue.synchronize()


def test_pitched_sizes(queue):
    buffer = DeviceBuffer((10, 100), queue, channels=2)

    assert buffer.tensor.shape == (10, 100, 2)
    assert buffer.size() == 10 * 100 * 8
    # 800 byte rows are padded to 1024 bytes
    assert buffer.padded_size() == 10 * 1024
    assert (buffer.pitch * 8) % PITCH_ALIGNMENT == 0


def test_volume_sizes(queue):
    buffer = DeviceBuffer((3, 10, 100), queue)

    assert buffer.tensor.shape == (3, 10, 100)
    assert buffer.size() == 3 * 10 * 100 * 4
    assert buffer.padded_size() == 3 * 10 * 512
    assert buffer.padded_size() >= buffer.size()


def test_region_is_a_view(queue):
    buffer = DeviceBuffer((4, 8), queue, channels=2)
    buffer.fill(0.0, queue)

    region = buffer.region(3, 2)
    region[..., 0] = 5.0

    assert region.shape == (2, 3, 2)
    assert buffer.tensor[:2, :3, 0].eq(5.0).all()
    assert buffer.tensor[2:, :, 0].eq(0.0).all()
    assert buffer.tensor[:, 3:, 0].eq(0.0).all()


def test_volume_region(queue):
    buffer = DeviceBuffer((5, 4, 8), queue)
    assert buffer.region(6, 3).shape == (5, 3, 6)

    with pytest.raises(ValueError):
        buffer.region(9, 3)


def test_copy_from(queue):
    source = DeviceBuffer((4, 8), queue, channels=2)
    target = DeviceBuffer((4, 8), queue, channels=2)
    source.tensor.copy_(torch.arange(64, dtype=torch.float32).view(4, 8, 2))

    target.copy_from(source, queue)
    assert torch.equal(target.tensor, source.tensor)

    with pytest.raises(ValueError):
        target.copy_from(DeviceBuffer((4, 8), queue), queue)


def test_release(queue):
    with DeviceBuffer((4, 8), queue) as buffer:
        assert buffer.is_allocated

    assert not buffer.is_allocated
    with pytest.raises(RuntimeError):
        _ = buffer.tensor


@pytest.mark.parametrize("dims", [(), (0, 4), (4, -1)])
def test_invalid_dims(queue, dims):
    with pytest.raises(ValueError):
        DeviceBuffer(dims, queue)
