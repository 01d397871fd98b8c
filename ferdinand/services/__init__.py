"""Services for the Drive access core. Import from the submodules directly."""
