"""Run-scoped driver of a vision export."""

import time
from pathlib import Path
from typing import Dict, List, Tuple

from loguru import logger

from visionexport.export.allocator import SPLITS, ClassIndex, SetAllocator
from visionexport.export.completion import CompletionEngine
from visionexport.export.fetcher import ObservationPhotoFetcher
from visionexport.export.writer import OutputWriter
from visionexport.parameters import ExportParameters
from visionexport.store.datastore import DataStore
from visionexport.taxonomy.eligibility import EligibilityAssessor
from visionexport.taxonomy.index import ROOT_ID, TaxonomyIndex
from visionexport.taxonomy.taxon import Taxon, TaxonStatus


class VisionExporter:
    """Build an export from a data store.

    Owns everything shared by the lookups of a run: the taxonomy, the class
    indices and the output files.

    Parameters
    ----------
    store : DataStore
        Source of the taxa, observations and photos.
    parameters : ExportParameters
        Validated parameters of the run.

    Examples
    --------
    >>> store = DataStore.from_parquet("/data/inat")
    >>> parameters = ExportParameters(output_dir="/data/exports")
    >>> export_dir = VisionExporter(store, parameters).run()
    """

    def __init__(self, store: DataStore, parameters: ExportParameters):
        self.store = store
        self.parameters = parameters
        self.index = TaxonomyIndex(skip_ancestry_mismatch=parameters.skip_ancestry_mismatch)
        self.class_index = ClassIndex()
        self.engine = None

    def load_taxonomy(self) -> TaxonomyIndex:
        return self.index.load(
            self.store,
            batch_size=self.parameters.taxa_batch_size,
            concurrency=self.parameters.taxa_concurrency,
            show_progress=self.parameters.show_progress,
        )

    def build_engine(self, writer: OutputWriter) -> CompletionEngine:
        p = self.parameters
        extinct_taxon_ids = self.store.globally_extinct_taxon_ids()
        logger.info(f"{len(extinct_taxon_ids)} taxa are globally extinct")
        assessor = EligibilityAssessor(self.index, extinct_taxon_ids, p.taxa)
        allocator = SetAllocator(
            ObservationPhotoFetcher(self.store, self.index),
            self.index,
            p,
            class_index=self.class_index,
            writer=writer,
        )
        return CompletionEngine(
            self.index,
            assessor,
            allocator,
            custom_leaf_ids=p.leaves,
            concurrency=p.taxa_concurrency,
            seed=p.seed,
            max_passes=p.max_passes,
            show_progress=p.show_progress,
        )

    def run(self) -> Path:
        """Run the export. Returns the directory holding the files."""
        start = time.time()
        with OutputWriter(self.parameters.output_dir, self.parameters.export_name) as writer:
            sink = logger.add(writer.directory / "export.log", level="DEBUG", mode="w")
            try:
                logger.info(f"Export parameters: {self.parameters.model_dump()}")
                self.load_taxonomy()
                self.engine = self.build_engine(writer)
                self.engine.run()
                self.write_taxonomy(writer)
                self.write_stats(writer)
                self.write_iconic_taxa(writer)
            finally:
                logger.remove(sink)
        logger.info(f"Export written to {writer.directory} in {time.time() - start:.1f}s")
        return writer.directory

    # ------------------------------------------------------------------
    # Metadata files

    def status_label(self, taxon: Taxon) -> str:
        if self.engine is not None and taxon.id in self.engine.failed:
            return "failed"
        return taxon.status.value

    def visual_line(self, taxon: Taxon, line_prefix: str) -> str:
        line = (
            f"{line_prefix}{taxon.name or ''}, {taxon.id}, {taxon.rank or ''}, "
            f"{self.status_label(taxon)}"
        )
        if taxon.status is not TaxonStatus.COMPLETE:
            counts = [str(taxon.counts.get(split, 0)) for split in ["train", "val", "test"]]
            line += f", {'::'.join(counts)}"
        return line

    def exported_children(self, taxon: Taxon) -> List[Taxon]:
        if taxon.id in self.parameters.leaves:
            return []
        children = [self.index[child_id] for child_id in self.index.child_ids(taxon.id)]
        return [child for child in children if child.status is not TaxonStatus.SKIPPED]

    def write_taxonomy(self, writer: OutputWriter) -> None:
        """Write taxonomy.csv and the tree of taxonomy_visual.txt, depth-first
        in tree order."""
        stack: List[Tuple[int, str, str]] = [
            (taxon_id, "", "")
            for taxon_id in reversed(self.index.root_ids())
            if self.index[taxon_id].status is not TaxonStatus.SKIPPED
        ]
        while stack:
            taxon_id, ancestor_prefix, line_prefix = stack.pop()
            taxon = self.index[taxon_id]
            if taxon.status.is_covered:
                leaf_class = self.class_index.leaf_class(taxon.id)
                iconic_class = None
                if leaf_class is not None:
                    iconic_class = self.class_index.iconic_class(taxon.iconic_taxon_id)
                parent_id = None if taxon.parent_id == ROOT_ID else taxon.parent_id
                writer.write_taxonomy(parent_id, taxon, leaf_class, iconic_class)
            writer.write_visual(self.visual_line(taxon, line_prefix))

            children = self.exported_children(taxon)
            for position, child in reversed(list(enumerate(children))):
                last = position == len(children) - 1
                icon = "└──" if last else "├──"
                prefix_icon = "   " if last else "│   "
                stack.append((child.id, ancestor_prefix + prefix_icon, ancestor_prefix + icon))

    def stats(self) -> Dict[str, int]:
        totals = {"leaves": len(self.class_index.leaf_classes)}
        for split in SPLITS:
            totals[split] = sum(
                self.index[taxon_id].counts.get(split, 0)
                for taxon_id in self.class_index.leaf_classes
            )
        return totals

    def write_stats(self, writer: OutputWriter) -> None:
        totals = self.stats()
        lines = [
            f"Total leaves: {totals['leaves']}",
            f"Total train photos: {totals['train']}",
            f"Total test photos: {totals['test']}",
            f"Total val photos: {totals['val']}",
        ]
        for line in lines:
            logger.info(line)
        writer.write_visual(lines)

    def write_iconic_taxa(self, writer: OutputWriter) -> None:
        for iconic_taxon_id, iconic_class in self.class_index.iconic_classes.items():
            taxon = self.index.get(iconic_taxon_id)
            writer.write_iconic(iconic_taxon_id, iconic_class, taxon.name if taxon else None)
