"""Reading OCI image tarballs, their layers and layer file systems."""