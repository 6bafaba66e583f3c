import time
from unittest.mock import patch

import pytest

from visionexport.__main__ import export
from visionexport.export.exporter import VisionExporter
from visionexport.store.datastore import TABLES, DataStore
from visionexport.taxonomy import TaxonStatus

DEFAULT_QUOTAS = dict(
    train_min=50,
    train_max=1000,
    val_min=25,
    val_max=100,
    test_min=25,
    test_max=100,
    spatial_max=5000,
    train_photos_per_observation=5,
)


def read_lines(path):
    return path.read_text().splitlines()


@pytest.fixture
def export_data(small_tree):
    small_tree.add_observations(3, 10)
    small_tree.add_observations(4, 2)
    small_tree.add_observations(6, 6)
    small_tree.add_observations(7, 10)
    small_tree.add_conservation_status(7)
    # a regional extinction does not count
    small_tree.add_conservation_status(3, place_id=12)
    return small_tree


def test_export(export_data, store, make_parameters):
    exporter = VisionExporter(store, make_parameters())
    directory = exporter.run()
    index = exporter.index

    assert directory.name == "export"
    assert index[1].status is TaxonStatus.COMPLETE
    assert index[2].status is TaxonStatus.COMPLETE
    assert index[3].status is TaxonStatus.POPULATED
    assert index[4].status is TaxonStatus.INCOMPLETE
    assert index[5].status is TaxonStatus.COMPLETE
    assert index[6].status is TaxonStatus.POPULATED
    assert index[7].status is TaxonStatus.SKIPPED

    leaf_classes = exporter.class_index.leaf_classes
    iconic_classes = exporter.class_index.iconic_classes
    assert sorted(leaf_classes) == [3, 6]
    assert sorted(leaf_classes.values()) == [0, 1]
    assert sorted(iconic_classes) == [0, 2]

    assert len(read_lines(directory / "train_data.csv")) == 1 + 8
    assert len(read_lines(directory / "val_data.csv")) == 1 + 3
    assert len(read_lines(directory / "test_data.csv")) == 1 + 3
    assert len(read_lines(directory / "spatial_data.csv")) == 1 + 6
    for line in read_lines(directory / "train_data.csv")[1:]:
        photo_id, url, leaf_class, iconic_class, taxon_id, community = line.split(",")
        assert "?" not in url
        assert int(leaf_class) == leaf_classes[int(taxon_id)]
        assert community == "1"

    l3, l6 = leaf_classes[3], leaf_classes[6]
    i3, i6 = iconic_classes[2], iconic_classes[0]
    assert read_lines(directory / "taxonomy.csv") == [
        "parent_taxon_id,taxon_id,rank_level,leaf_class_id,iconic_class_id,name",
        ",1,100,,,Life",
        "1,2,50,,,Aves",
        f"2,3,10,{l3},{i3},Parus major",
        "1,5,50,,,Insecta",
        f"5,6,10,{l6},{i6},Apis mellifera Linnaeus",
    ]
    assert sorted(read_lines(directory / "iconic_taxa.csv")[1:]) == sorted(
        [f"2,{i3},Aves", f"0,{i6},Unassigned"]
    )
    assert read_lines(directory / "taxonomy_visual.txt") == [
        "Name, ID, Rank, Status, (Train::Val::Test)",
        "",
        "Life, 1, stateofmatter, complete",
        "├──Aves, 2, class, complete",
        "│   ├──Parus major, 3, species, populated, 4::2::2",
        "│   └──Parus minor, 4, species, incomplete, 0::1::1",
        "└──Insecta, 5, class, complete",
        "   └──Apis mellifera, Linnaeus, 6, species, populated, 4::1::1",
        "Total leaves: 2",
        "Total train photos: 8",
        "Total test photos: 3",
        "Total val photos: 3",
    ]
    assert (directory / "export.log").is_file()


def test_exports_are_deterministic(export_data, store, make_parameters):
    first = VisionExporter(store, make_parameters(export_name="first")).run()
    second = VisionExporter(store, make_parameters(export_name="second")).run()

    for path in first.iterdir():
        if path.suffix in (".csv", ".txt"):
            assert path.read_text() == (second / path.name).read_text(), path.name


def test_class_indices_do_not_depend_on_batch_order(export_data, store, make_parameters):
    taxa_in_range = store.taxa_in_range

    def run(export_name, delayed_starts):
        def delayed(start_id, end_id):
            if start_id in delayed_starts:
                time.sleep(0.3)
            return taxa_in_range(start_id, end_id)

        parameters = make_parameters(export_name=export_name, taxa_batch_size=2)
        exporter = VisionExporter(store, parameters)
        with patch.object(store, "taxa_in_range", side_effect=delayed):
            directory = exporter.run()
        return exporter, directory

    in_order, first = run("in-order", delayed_starts=())
    # Insecta and Apis are read before Aves and the Parus species
    out_of_order, second = run("out-of-order", delayed_starts=(0, 2))

    assert out_of_order.index.child_ids(1) == in_order.index.child_ids(1) == [2, 5]
    assert out_of_order.class_index.leaf_classes == in_order.class_index.leaf_classes
    assert out_of_order.class_index.iconic_classes == in_order.class_index.iconic_classes
    for name in ["train_data.csv", "taxonomy.csv", "taxonomy_visual.txt"]:
        assert (first / name).read_text() == (second / name).read_text()


def test_selected_taxa(export_data, store, make_parameters):
    exporter = VisionExporter(store, make_parameters(taxa=[6]))
    directory = exporter.run()

    assert exporter.class_index.leaf_classes == {6: 0}
    assert exporter.index[2].status is TaxonStatus.SKIPPED
    assert [line.split(",")[1] for line in read_lines(directory / "taxonomy.csv")[1:]] == [
        "1",
        "5",
        "6",
    ]


def test_thirty_pairs_are_not_exported(small_tree, store, make_parameters):
    small_tree.add_observations(3, 30)

    exporter = VisionExporter(store, make_parameters(**DEFAULT_QUOTAS))
    directory = exporter.run()

    assert exporter.index[3].status is TaxonStatus.INCOMPLETE
    assert exporter.index[3].counts == {"train": 0, "val": 5, "test": 25}
    for split in ["train", "val", "test"]:
        assert len(read_lines(directory / f"{split}_data.csv")) == 1
    assert read_lines(directory / "taxonomy.csv")[1:] == []


def test_failed_lookups_are_reported(export_data, store, make_parameters):
    exporter = VisionExporter(store, make_parameters())
    original = store.observations

    def observations(taxon_ids, community, **kwargs):
        if taxon_ids == [4]:
            raise RuntimeError("connection lost")
        return original(taxon_ids, community, **kwargs)

    store.observations = observations
    directory = exporter.run()

    assert exporter.engine.failed == {4}
    assert exporter.index[2].status is TaxonStatus.COMPLETE
    assert "│   └──Parus minor, 4, species, failed, 0::0::0" in read_lines(
        directory / "taxonomy_visual.txt"
    )


def test_command_line_export(export_data, tmp_path):
    parquet_dir = tmp_path / "tables"
    parquet_dir.mkdir()
    for table in TABLES:
        export_data.connection.execute(
            f"COPY {table} TO '{parquet_dir / (table + '.parquet')}' (FORMAT PARQUET)"
        )
    output_dir = tmp_path / "exports"
    output_dir.mkdir()

    result = export(
        str(output_dir),
        parquet_dir=str(parquet_dir),
        export_name="cli",
        taxa="3",
        train_min=2,
        train_max=4,
        val_min=1,
        val_max=2,
        test_min=1,
        test_max=2,
        spatial_max=3,
        show_progress=False,
    )

    assert result == str(output_dir / "cli")
    assert len(read_lines(output_dir / "cli" / "train_data.csv")) == 1 + 4


def test_store_requires_one_source(tmp_path):
    with pytest.raises(ValueError):
        DataStore.from_source()
    with pytest.raises(ValueError):
        DataStore.from_source(postgres_dsn="postgresql://localhost/inat", parquet_dir=tmp_path)


def test_missing_parquet_table(tmp_path):
    with pytest.raises(FileNotFoundError, match="taxa.parquet"):
        DataStore.from_parquet(tmp_path)
