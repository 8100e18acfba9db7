# tests/test_package_size.py
from ndc_calculator.upstream.package_size import normalize_package_size, parse_description_chain


def test_description_chain_multiplies_counts():
    product = {"dosage_form": "SOLUTION"}
    packaging = {"description": "1 BOTTLE in 1 CARTON (0121-0657-10) > 100 mL in 1 BOTTLE"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 100
    assert inference.method == "package_description"
    assert inference.low_confidence is False


def test_simple_capsule_bottle():
    size, inference = normalize_package_size(
        {"dosage_form": "CAPSULE"},
        {"description": "30 CAPSULE in 1 BOTTLE (0093-3109-53)"},
    )
    assert size == 30


def test_blister_packs_are_multiplied():
    size, _ = normalize_package_size(
        {"dosage_form": "TABLET"},
        {"description": "10 BLISTER PACK in 1 CARTON > 10 TABLET in 1 BLISTER PACK"},
    )
    assert size == 100


def test_explicit_package_size_field_wins_over_description():
    size, inference = normalize_package_size(
        {"package_size": "60", "package_description": "30 TABLET in 1 BOTTLE"},
    )
    assert size == 60
    assert inference.method == "package_size_field"


def test_first_nested_packaging_used_for_flat_record():
    product = {
        "dosage_form": "TABLET",
        "packaging": [{"description": "90 TABLET in 1 BOTTLE"}, {"description": "1000 TABLET in 1 BOTTLE"}],
    }
    size, inference = normalize_package_size(product)

    assert size == 90
    assert inference.method == "packaging"


def test_unknown_size_is_zero():
    size, inference = normalize_package_size({"dosage_form": "TABLET"}, {"description": "BOTTLE"})
    assert size == 0
    assert inference.method == "none"


def test_insulin_pens_with_known_concentration():
    product = {
        "brand_name": "Humalog KwikPen",
        "dosage_form": "INJECTION, SOLUTION",
        "active_ingredients": [{"name": "INSULIN LISPRO", "strength": "100 [iU]/mL"}],
    }
    packaging = {"description": "5 SYRINGE in 1 CARTON > 3 mL in 1 SYRINGE"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 1500
    assert inference.method == "injectable"
    assert inference.low_confidence is False


def test_insulin_u200_marker_detected():
    product = {"brand_name": "Humalog U-200 KwikPen", "dosage_form": "INJECTION, SOLUTION"}
    packaging = {"description": "2 PEN in 1 CARTON > 3 mL in 1 PEN"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 1200
    assert inference.low_confidence is False


def test_insulin_vial_without_volume_uses_default_fill_and_flags_low_confidence():
    product = {"brand_name": "Lantus", "dosage_form": "INJECTION, SOLUTION"}
    packaging = {"description": "1 VIAL in 1 CARTON"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 1000  # 10 mL x 100 ед/mL
    assert inference.low_confidence is True
    assert "fill volume defaulted" in inference.detail
    assert "concentration defaulted" in inference.detail


def test_inhaler_canister_count_uses_actuation_defaults():
    product = {"brand_name": "Ventolin HFA", "generic_name": "ALBUTEROL SULFATE", "dosage_form": "AEROSOL, METERED"}
    packaging = {"description": "1 INHALER in 1 CARTON"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 200
    assert inference.method == "inhaler_default"
    assert inference.low_confidence is True


def test_unknown_inhaler_uses_default_actuation_count():
    product = {"brand_name": "Alvesco", "generic_name": "CICLESONIDE", "dosage_form": "AEROSOL, METERED"}
    packaging = {"description": "2 INHALER in 1 CARTON"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 400
    assert inference.method == "inhaler_default"
    assert "actuations defaulted" in inference.detail


def test_inhaler_with_metered_count_uses_description():
    product = {"brand_name": "Flovent HFA", "dosage_form": "AEROSOL, METERED"}
    packaging = {"description": "1 INHALER in 1 CARTON > 120 AEROSOL, METERED in 1 INHALER"}

    size, inference = normalize_package_size(product, packaging)

    assert size == 120
    assert inference.method == "package_description"


def test_parse_description_chain_skips_unstructured_segments():
    segments = parse_description_chain("1 KIT > something else > 5 mL in 1 VIAL")
    assert [(s.quantity, s.unit, s.container) for s in segments] == [(5.0, "ML", "VIAL")]
