import pytest
from payment_bridge.reference import ReferenceGenerator


def test_generate_embeds_prefix_order_and_stamp():
    """
    Test case 1: Ref is prefix + order id + separator + clock reading.
    """
    generator = ReferenceGenerator(prefix="LIK", clock=lambda: 1760000000000)
    assert generator.generate("1001") == "LIK1001-1760000000000"


def test_same_millisecond_never_collides():
    """
    Test case 2: Two refs for the same order in the same millisecond differ.
    """
    generator = ReferenceGenerator(clock=lambda: 1760000000000)
    first = generator.generate("1001")
    second = generator.generate("1001")
    assert first != second
    assert second.endswith("-1760000000001")


def test_refs_for_different_orders_are_unique():
    """
    Test case 3: A burst of refs across orders has no duplicates.
    """
    generator = ReferenceGenerator(clock=lambda: 5)
    refs = {generator.generate(str(i)) for i in range(500)}
    assert len(refs) == 500


def test_stamp_survives_clock_going_backwards():
    """
    Test case 4: A clock step backwards still yields an increasing stamp.
    """
    readings = iter([2000, 1000])
    generator = ReferenceGenerator(clock=lambda: next(readings))
    generator.generate("a")
    assert generator.generate("a").endswith("-2001")


@pytest.mark.parametrize("order_id", ["1001", "10-01", "100-1760000000000", "LIK7"])
def test_extract_order_id_is_unambiguous(order_id):
    """
    Test case 5: Order ids with digits or separators next to the stamp round-trip.
    """
    generator = ReferenceGenerator(clock=lambda: 1760000000000)
    assert generator.extract_order_id(generator.generate(order_id)) == order_id


@pytest.mark.parametrize("ref", ["XYZ1001-1", "LIK1001", "LIK-1760000000000", "LIK1001-17a0"])
def test_extract_order_id_rejects_foreign_refs(ref):
    """
    Test case 6: Refs not produced by the generator are rejected.
    """
    with pytest.raises(ValueError):
        ReferenceGenerator().extract_order_id(ref)


def test_empty_order_id_is_rejected():
    with pytest.raises(ValueError):
        ReferenceGenerator().generate("")
