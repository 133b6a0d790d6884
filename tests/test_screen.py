from chip8 import DISPLAY_HEIGHT, DISPLAY_WIDTH, C8Keypad, C8Screen


def test_xor8px_sets_and_reports_collision():
    screen = C8Screen()
    assert screen.xor8px(0, 0, 0b10100000) is False
    assert screen.getpx(0, 0)
    assert not screen.getpx(1, 0)
    assert screen.getpx(2, 0)
    assert screen.xor8px(0, 0, 0b01000000) is False
    assert screen.lit_count() == 3
    assert screen.xor8px(0, 0, 0b10000000) is True
    assert not screen.getpx(0, 0)
    assert screen.lit_count() == 2


def test_xor8px_clips_right_and_bottom():
    screen = C8Screen()
    assert screen.xor8px(DISPLAY_WIDTH - 3, 0, 0xFF) is False
    assert screen.lit_count() == 3
    assert not screen.getpx(0, 1)
    assert screen.xor8px(0, DISPLAY_HEIGHT, 0xFF) is False
    assert screen.lit_count() == 3


def test_clear():
    screen = C8Screen()
    screen.xor8px(10, 10, 0xFF)
    screen.clear()
    assert screen.lit_count() == 0


def test_snapshot_shape_and_isolation():
    screen = C8Screen()
    screen.xor8px(5, 7, 0x80)
    grid = screen.snapshot()
    assert len(grid) == DISPLAY_HEIGHT
    assert all(len(row) == DISPLAY_WIDTH for row in grid)
    assert grid[7][5] is True
    screen.clear()
    assert grid[7][5] is True


def test_keypad_first_pressed_is_lowest_index():
    keypad = C8Keypad()
    assert keypad.first_pressed() is None
    keypad.set_key(9, True)
    keypad.set_key(2, True)
    assert keypad.first_pressed() == 2
    keypad.set_key(2, False)
    assert keypad.first_pressed() == 9


def test_keypad_masks_register_values():
    keypad = C8Keypad()
    keypad.set_key(0x3, True)
    assert keypad.is_pressed(0x13)
